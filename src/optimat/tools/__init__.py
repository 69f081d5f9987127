from optimat.tools.base import ToolContext, ToolOutcome, ToolResult
from optimat.tools.registry import TOOL_HANDLERS, ToolDispatcher

__all__ = ["ToolContext", "ToolOutcome", "ToolResult", "ToolDispatcher", "TOOL_HANDLERS"]
