from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class TurnStartedEvent:
    conversation_id: str


@dataclass(frozen=True, slots=True)
class ModelInvocationEvent:
    conversation_id: str
    round: int


@dataclass(frozen=True, slots=True)
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    args: dict


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    tool_call_id: str
    tool_name: str
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class AssistantMessageEvent:
    content: str


@dataclass(frozen=True, slots=True)
class TurnFinishedEvent:
    conversation_id: str
    status: str
    rounds: int


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None


Event: TypeAlias = (
    TurnStartedEvent
    | ModelInvocationEvent
    | ToolCallEvent
    | ToolResultEvent
    | AssistantMessageEvent
    | TurnFinishedEvent
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)
