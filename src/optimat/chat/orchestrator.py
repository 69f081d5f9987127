from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from common import llm
from common.events import (
    AssistantMessageEvent,
    ErrorEvent,
    EventCallback,
    EventEmitter,
    ModelInvocationEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnFinishedEvent,
    TurnStartedEvent,
)
from common.parallel import ParallelExecutor
from common.retry import RetryConfig, retry_call
from optimat.chat.locks import ConversationLocks
from optimat.chat.prompts import SYSTEM_PROMPT, build_system_prompt
from optimat.config import OptimatConfig
from optimat.errors import ExternalServiceError, ToolLoopExceeded, ToolValidationError, TurnCancelled
from optimat.models import Attachment
from optimat.services.base import DirectionsProvider, Geocoder, PlaceSearcher, WebSearcher
from optimat.storage import Storage
from optimat.tools.base import ToolContext, ToolResult
from optimat.tools.registry import ToolDispatcher, parse_arguments

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = (
    "I'm sorry, I wasn't able to finish looking that up. "
    "Could you rephrase your request or try again in a moment?"
)
CONVERSATION_ROLES = ("user", "assistant")


class TurnState(str, Enum):
    AWAITING_USER_MESSAGE = "awaiting_user_message"
    MODEL_INVOCATION = "model_invocation"
    TOOL_EXECUTION_PENDING = "tool_execution_pending"
    RESPONSE_READY = "response_ready"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"


@dataclass(frozen=True, slots=True)
class TurnResult:
    message: str
    attachments: list[Attachment] = field(default_factory=list)
    status: TurnState = TurnState.RESPONSE_READY
    rounds: int = 0

    def to_response(self) -> dict:
        return {
            "message": self.message,
            "attachments": [a.model_dump(mode="json") for a in self.attachments],
        }


class ConversationOrchestrator:
    def __init__(
        self,
        storage: Storage,
        *,
        geocoder: Geocoder,
        places: PlaceSearcher,
        directions: DirectionsProvider | None = None,
        web_searcher: WebSearcher | None = None,
        config: OptimatConfig | None = None,
        dispatcher: ToolDispatcher | None = None,
        completion_fn: Callable[..., Any] | None = None,
        locks: ConversationLocks | None = None,
        on_event: EventCallback = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.storage = storage
        self.geocoder = geocoder
        self.places = places
        self.directions = directions
        self.web_searcher = web_searcher
        self.config = config or OptimatConfig()
        self.dispatcher = dispatcher or ToolDispatcher()
        self.completion_fn = completion_fn or llm.completion
        self.locks = locks or ConversationLocks()
        self.emitter = EventEmitter(on_event)
        self.system_prompt = system_prompt
        self.executor: ParallelExecutor = ParallelExecutor(
            max_workers=self.config.tool_workers,
            overall_timeout=self.config.tool_timeout_s,
        )
        self.model_retry = RetryConfig(
            max_retries=self.config.llm.max_retries,
            base_delay=self.config.llm.retry_base_delay,
        )

    def handle_chat_request(self, payload: dict) -> dict:
        conversation_id = payload.get("conversation_id")
        message = payload.get("message")
        if not conversation_id or not isinstance(conversation_id, str):
            raise ValueError("conversation_id is required")
        if not isinstance(message, str):
            raise ValueError("message is required")
        return self.run_turn(conversation_id, message).to_response()

    def run_turn(
        self,
        conversation_id: str,
        user_text: str,
        *,
        cancel: threading.Event | None = None,
    ) -> TurnResult:
        if not user_text or not user_text.strip():
            raise ValueError("message must not be empty")
        with self.locks.hold(conversation_id):
            return self._run_turn(conversation_id, user_text, cancel)

    def _run_turn(
        self, conversation_id: str, user_text: str, cancel: threading.Event | None
    ) -> TurnResult:
        self._enter(TurnState.AWAITING_USER_MESSAGE, conversation_id, cancel)
        self.emitter.emit(TurnStartedEvent(conversation_id=conversation_id))
        self.storage.ensure_conversation(conversation_id)
        self.storage.add_message(conversation_id, "user", user_text)

        messages = self._history(conversation_id)
        context = self._context(conversation_id)
        attachments: list[Attachment] = []

        try:
            final_text, rounds = self._tool_loop(
                conversation_id, messages, context, attachments, cancel
            )
        except ToolLoopExceeded as e:
            logger.error(f"[{conversation_id}] {e}; returning fallback answer")
            self.emitter.emit(ErrorEvent(message=str(e), source="orchestrator"))
            self.emitter.emit(
                TurnFinishedEvent(
                    conversation_id=conversation_id,
                    status=TurnState.TOOL_LOOP_EXCEEDED.value,
                    rounds=e.rounds,
                )
            )
            return TurnResult(
                message=FALLBACK_MESSAGE,
                attachments=[],
                status=TurnState.TOOL_LOOP_EXCEEDED,
                rounds=e.rounds,
            )

        self._enter(TurnState.RESPONSE_READY, conversation_id, cancel)
        self.storage.add_message(conversation_id, "assistant", final_text)
        self.storage.touch_conversation(conversation_id)
        self.emitter.emit(AssistantMessageEvent(content=final_text))
        self.emitter.emit(
            TurnFinishedEvent(
                conversation_id=conversation_id,
                status=TurnState.RESPONSE_READY.value,
                rounds=rounds,
            )
        )
        return TurnResult(
            message=final_text,
            attachments=attachments,
            status=TurnState.RESPONSE_READY,
            rounds=rounds,
        )

    def _tool_loop(
        self,
        conversation_id: str,
        messages: list[dict],
        context: ToolContext,
        attachments: list[Attachment],
        cancel: threading.Event | None,
    ) -> tuple[str, int]:
        rounds = 0
        recorded = 0
        while True:
            self._enter(TurnState.MODEL_INVOCATION, conversation_id, cancel)
            self.emitter.emit(ModelInvocationEvent(conversation_id=conversation_id, round=rounds + 1))
            response = self._invoke_model(messages)

            tool_calls = getattr(response, "tool_calls", None) or []
            if not tool_calls:
                content = response.content or ""
                if not content.strip():
                    logger.warning(f"[{conversation_id}] model returned an empty answer; using fallback")
                    return FALLBACK_MESSAGE, rounds
                return content, rounds
            if rounds >= self.config.max_tool_rounds:
                raise ToolLoopExceeded(rounds)

            rounds += 1
            self._enter(TurnState.TOOL_EXECUTION_PENDING, conversation_id, cancel)
            messages.append(
                {
                    "role": "assistant",
                    "content": response.content,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.function.name,
                                "arguments": tc.function.arguments,
                            },
                        }
                        for tc in tool_calls
                    ],
                }
            )

            for result in self._execute_round(tool_calls, context):
                # At most max_tool_rounds records per turn, however many calls a round asks for.
                if result.success and recorded < self.config.max_tool_rounds:
                    self.storage.save_tool_call(
                        conversation_id, result.tool_name, result.arguments, result.data
                    )
                    attachments.append(result.attachment)
                    recorded += 1
                elif result.success:
                    logger.warning(
                        f"[{conversation_id}] not recording {result.tool_name} call"
                        f" {result.tool_call_id}: per-turn record limit reached"
                    )
                messages.append(result.to_message())

    def _execute_round(self, tool_calls: list[Any], context: ToolContext) -> list[ToolResult]:
        for tc in tool_calls:
            try:
                args = parse_arguments(tc.function.arguments)
            except ToolValidationError:
                args = {}
            self.emitter.emit(
                ToolCallEvent(tool_call_id=tc.id, tool_name=tc.function.name, args=args)
            )

        outcomes = self.executor.execute_ordered(
            list(tool_calls),
            lambda tc: self.dispatcher.dispatch(
                tc.id, tc.function.name, tc.function.arguments, context
            ),
        )

        results: list[ToolResult] = []
        for outcome in outcomes:
            tc = outcome.task
            if outcome.success:
                result = outcome.value
            elif outcome.timed_out:
                result = ToolResult(
                    tool_call_id=tc.id,
                    tool_name=tc.function.name,
                    arguments={},
                    success=False,
                    error="Tool execution timed out",
                )
            else:
                raise outcome.error
            self.emitter.emit(
                ToolResultEvent(
                    tool_call_id=result.tool_call_id,
                    tool_name=result.tool_name,
                    success=result.success,
                    error=result.error,
                )
            )
            results.append(result)
        return results

    def _invoke_model(self, messages: list[dict]) -> Any:
        api_messages = [{"role": "system", "content": self.system_prompt}] + messages
        llm_config = self.config.llm
        try:
            response = retry_call(
                lambda: self.completion_fn(
                    model=llm_config.model,
                    messages=api_messages,
                    tools=self.dispatcher.get_tool_schemas(),
                    tool_choice="auto",
                    temperature=llm_config.temperature,
                    max_tokens=llm_config.max_tokens,
                    timeout=llm_config.timeout_s,
                ),
                config=self.model_retry,
                is_retryable=llm.is_retryable_error,
                label="model completion",
            )
        except Exception as e:
            logger.error(f"Model call failed: {e}")
            self.emitter.emit(ErrorEvent(message=str(e), source="model"))
            raise ExternalServiceError(f"Model call failed: {e}") from e

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Model usage: {llm.usage_of(response)}")
        return response.choices[0].message

    def _history(self, conversation_id: str) -> list[dict]:
        return [
            {"role": m.role, "content": m.content}
            for m in self.storage.list_messages(conversation_id)
            if m.role in CONVERSATION_ROLES and m.content.strip()
        ]

    def _context(self, conversation_id: str) -> ToolContext:
        return ToolContext(
            conversation_id=conversation_id,
            geocoder=self.geocoder,
            places=self.places,
            load_providers=self.storage.list_providers,
            find_providers_by_name=self.storage.find_providers_by_name,
            directions=self.directions,
            web_searcher=self.web_searcher,
            matching=self.config.matching,
        )

    def _enter(
        self, state: TurnState, conversation_id: str, cancel: threading.Event | None
    ) -> None:
        if cancel is not None and cancel.is_set():
            logger.info(f"[{conversation_id}] turn cancelled before {state.value}")
            raise TurnCancelled(f"Turn cancelled before {state.value}")
        logger.debug(f"[{conversation_id}] -> {state.value}")


def build_orchestrator(
    config: OptimatConfig,
    storage: Storage | None = None,
    on_event: EventCallback = None,
) -> ConversationOrchestrator:
    from optimat.services.google_maps import GoogleMapsClient
    from optimat.services.web_search import TavilyWebSearcher

    storage = storage or Storage(config.db_path)
    maps = GoogleMapsClient(config.maps)
    web_searcher = TavilyWebSearcher(config.web_search) if config.web_search.enabled else None
    provider_names = [p.name for p in storage.list_providers()]
    return ConversationOrchestrator(
        storage,
        geocoder=maps,
        places=maps,
        directions=maps,
        web_searcher=web_searcher,
        config=config,
        on_event=on_event,
        system_prompt=build_system_prompt(provider_names),
    )
