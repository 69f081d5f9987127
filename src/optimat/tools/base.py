from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from pydantic import BaseModel

from optimat.config import MatchingConfig
from optimat.models import Attachment, AttachmentType, Provider, ToolName
from optimat.services.base import DirectionsProvider, Geocoder, PlaceSearcher, WebSearcher


@dataclass(frozen=True, slots=True)
class ToolContext:
    conversation_id: str
    geocoder: Geocoder
    places: PlaceSearcher
    load_providers: Callable[[], list[Provider]]
    find_providers_by_name: Callable[[str, int], list[Provider]]
    directions: DirectionsProvider | None = None
    web_searcher: WebSearcher | None = None
    matching: MatchingConfig = field(default_factory=MatchingConfig)


@dataclass(frozen=True, slots=True)
class ToolOutcome:
    data: Any


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_call_id: str
    tool_name: str
    arguments: dict
    success: bool
    data: Any = None
    error: str | None = None
    attachment: Attachment | None = None

    def to_model_content(self) -> str:
        if self.success:
            return json.dumps(self.data, default=str)
        payload: dict[str, Any] = {"error": self.error}
        if isinstance(self.data, dict):
            payload.update(self.data)
        return json.dumps(payload, default=str)

    def to_message(self) -> dict:
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "content": self.to_model_content(),
        }


class ToolHandler(Protocol):
    name: ToolName
    attachment_type: AttachmentType
    description: str
    parameters: dict

    def schema(self) -> dict: ...

    def validate(self, raw: dict) -> BaseModel: ...

    def execute(self, args: Any, context: ToolContext) -> ToolOutcome: ...
