import json
import logging
from typing import Any

from optimat.errors import ExternalServiceError, PersistenceError, ToolValidationError
from optimat.models import Attachment, ToolName
from optimat.tools.base import ToolContext, ToolHandler, ToolResult
from optimat.tools.handlers import (
    FindProvidersTool,
    GeneralQuestionTool,
    ProviderInfoTool,
    SearchAddressesTool,
)

logger = logging.getLogger(__name__)

TOOL_HANDLERS: dict[ToolName, ToolHandler] = {
    handler.name: handler
    for handler in (
        FindProvidersTool(),
        SearchAddressesTool(),
        ProviderInfoTool(),
        GeneralQuestionTool(),
    )
}

_missing = set(ToolName) - set(TOOL_HANDLERS)
if _missing:
    raise RuntimeError(f"No handler registered for: {sorted(n.value for n in _missing)}")


def parse_arguments(raw: Any) -> dict:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolValidationError(f"Tool arguments are not valid JSON: {e.msg}") from e
        if not isinstance(parsed, dict):
            raise ToolValidationError("Tool arguments must be a JSON object")
        return parsed
    raise ToolValidationError("Tool arguments must be a JSON object")


class ToolDispatcher:
    def __init__(self, handlers: dict[ToolName, ToolHandler] | None = None):
        self.handlers = handlers or TOOL_HANDLERS

    def get_tool_schemas(self) -> list[dict[str, Any]]:
        return [self.handlers[name].schema() for name in ToolName if name in self.handlers]

    def dispatch(
        self,
        tool_call_id: str,
        tool_name: str,
        raw_arguments: Any,
        context: ToolContext,
    ) -> ToolResult:
        arguments: dict = {}
        try:
            try:
                name = ToolName(tool_name)
            except ValueError:
                raise ToolValidationError(f"Tool {tool_name} not found") from None
            handler = self.handlers[name]

            arguments = parse_arguments(raw_arguments)
            args = handler.validate(arguments)
            outcome = handler.execute(args, context)
        except ToolValidationError as e:
            logger.warning(f"Tool {tool_name} rejected: {e}")
            return ToolResult(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                arguments=arguments,
                success=False,
                data=e.details or None,
                error=str(e),
            )
        except ExternalServiceError as e:
            logger.warning(f"Tool {tool_name} failed: {e}")
            return ToolResult(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                arguments=arguments,
                success=False,
                error=str(e),
            )
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception(f"Tool {tool_name} raised unexpectedly")
            return ToolResult(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                arguments=arguments,
                success=False,
                error=f"Tool execution failed: {e}",
            )

        attachment = Attachment(
            type=handler.attachment_type,
            data=outcome.data,
            metadata={
                "tool_name": name.value,
                "tool_use_id": tool_call_id,
                "conversation_id": context.conversation_id,
            },
        )
        return ToolResult(
            tool_call_id=tool_call_id,
            tool_name=name.value,
            arguments=arguments,
            success=True,
            data=outcome.data,
            attachment=attachment,
        )
