"""
Game error taxonomy.

Agents raise these; the HTTP and WebSocket layers turn them into
user-facing rejections. Each carries a stable machine-readable `code`.
"""
from typing import Optional


class GameError(Exception):
    code = "GAME_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(GameError):
    """Session or queue absent at read time. Terminal for the flow."""

    code = "NOT_FOUND"


class PreconditionError(GameError):
    """Full, already started, wrong phase, not your turn, ..."""

    code = "PRECONDITION_FAILED"


class NotHostError(PreconditionError):
    code = "NOT_HOST"


class StaleStateError(GameError):
    """The session moved on since the caller's snapshot was taken."""

    code = "STALE_STATE"
    retryable = True


class IdentityAbsentError(GameError):
    code = "IDENTITY_ABSENT"

    def __init__(self, message: str = "Sign in required"):
        super().__init__(message)
