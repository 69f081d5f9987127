from optimat.chat.locks import ConversationLocks
from optimat.chat.orchestrator import (
    FALLBACK_MESSAGE,
    ConversationOrchestrator,
    TurnResult,
    TurnState,
    build_orchestrator,
)

__all__ = [
    "ConversationLocks",
    "ConversationOrchestrator",
    "FALLBACK_MESSAGE",
    "TurnResult",
    "TurnState",
    "build_orchestrator",
]
