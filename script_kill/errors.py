"""Typed rejections raised by the session state machine and its callers.

Each error carries a short machine-readable `code` plus a human message
naming the violated precondition. None of them is raised after a partial
write: the session record is only persisted once every guard has passed.
"""

from __future__ import annotations


class GameError(Exception):
    """Base class for rejected game operations."""

    code = "game_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class SessionNotFound(GameError):
    code = "session_not_found"


class ScriptNotFound(GameError):
    code = "script_not_found"


class NotHost(GameError):
    code = "not_host"


class NotParticipant(GameError):
    code = "not_participant"


class RoundMismatch(GameError):
    code = "round_mismatch"


class RoundLimitExceeded(GameError):
    code = "round_limit_exceeded"


class RoundNotOpen(GameError):
    code = "round_not_open"


class NotFinalRound(GameError):
    code = "not_final_round"


class SessionFinished(GameError):
    code = "session_finished"


class InvalidRoster(GameError):
    code = "invalid_roster"
