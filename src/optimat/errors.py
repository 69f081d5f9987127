class OptimatError(Exception):
    pass


class ToolValidationError(OptimatError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ExternalServiceError(OptimatError):
    pass


class ToolLoopExceeded(OptimatError):
    def __init__(self, rounds: int):
        super().__init__(f"Model requested tools after {rounds} tool round(s)")
        self.rounds = rounds


class PersistenceError(OptimatError):
    pass


class ReplayInconsistency(OptimatError):
    pass


class ConversationNotFound(OptimatError):
    pass


class TurnCancelled(OptimatError):
    pass


class ExampleNotFound(OptimatError):
    pass
