"""Error taxonomy for the chat core.

Every failure that crosses the real-time boundary is reduced to one of the
codes below. Domain code raises ``ChatError``; the WebSocket dispatcher and
the HTTP routes turn it into ``{"ok": False, "error": <code>}``.
"""
from enum import Enum
from typing import Any, Dict


class ErrorCode(str, Enum):
    """Stable error codes returned to clients.

    Attributes:
        VALIDATION: Malformed input; nothing was changed.
        NOT_FOUND: Referenced message, room or poll option is absent.
        FORBIDDEN: Caller is not the author, a moderator or the owner.
        BANNED: Caller is excluded from the room.
        SLOW_MODE: Slow-mode interval has not elapsed (carries waitMs).
        RATE_LIMIT: Too many messages in the current window.
        CONFLICT: State conflict (room exists, poll closed, pin list full).
        UPSTREAM_UNAVAILABLE: Optional enrichment dependency failed.
        INTERNAL: Unexpected server failure.
    """
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    BANNED = "BANNED"
    SLOW_MODE = "SLOW_MODE"
    RATE_LIMIT = "RATE_LIMIT"
    CONFLICT = "CONFLICT"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    INTERNAL = "INTERNAL"


# HTTP status for each code when surfaced through a REST endpoint
HTTP_STATUS = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.BANNED: 403,
    ErrorCode.SLOW_MODE: 429,
    ErrorCode.RATE_LIMIT: 429,
    ErrorCode.CONFLICT: 409,
    ErrorCode.UPSTREAM_UNAVAILABLE: 502,
    ErrorCode.INTERNAL: 500,
}


class ChatError(Exception):
    """A rejected chat operation.

    Args:
        code: The error code reported to the caller.
        message: Optional human-readable detail (never includes room internals).
        **extra: Additional result fields, e.g. ``waitMs`` for slow mode.
    """

    def __init__(self, code: ErrorCode, message: str = "", **extra: Any) -> None:
        super().__init__(message or code.value)
        self.code = code
        self.message = message
        self.extra = extra

    def to_result(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"ok": False, "error": self.code.value}
        if self.message:
            result["message"] = self.message
        result.update(self.extra)
        return result

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.code]
