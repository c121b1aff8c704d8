"""
Domain error taxonomy.

Every failure the core surfaces to a caller is a ``ChatError`` subclass with a
machine-readable ``error_code``. ``Forbidden``, ``NotFound``, ``Conflict``,
``CapacityExceeded`` and ``InvalidRequest`` are terminal for the operation that
raised them. ``TransientIO`` is the only retryable one.
"""

from typing import Any, Dict, Optional, Type


class ChatError(Exception):
    """Base class for errors raised by the chat core."""

    default_error_code: str = "CHAT_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as an API response body."""
        result: Dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
            "error_type": self.default_error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class Forbidden(ChatError):
    """Caller lacks the membership or role the operation needs."""

    default_error_code = "FORBIDDEN"


class NotFound(ChatError):
    """Referenced chat, message, membership or profile is absent."""

    default_error_code = "NOT_FOUND"


class Conflict(ChatError):
    """Duplicate membership, friendship, request or invitation."""

    default_error_code = "CONFLICT"


class CapacityExceeded(ChatError):
    """Chat cannot take another member."""

    default_error_code = "CAPACITY_EXCEEDED"


class InvalidRequest(ChatError):
    """Input is malformed for the operation."""

    default_error_code = "INVALID_REQUEST"


class Unauthenticated(ChatError):
    """No identity was presented."""

    default_error_code = "UNAUTHENTICATED"


class RateLimitExceeded(ChatError):
    """Caller exceeded the request budget for the current window."""

    default_error_code = "RATE_LIMITED"


class TransientIO(ChatError):
    """Store or transport failure. Safe to retry."""

    default_error_code = "TRANSIENT_IO"
    retryable = True


ERRORS_BY_CODE: Dict[str, Type[ChatError]] = {
    cls.default_error_code: cls
    for cls in (
        Forbidden,
        NotFound,
        Conflict,
        CapacityExceeded,
        InvalidRequest,
        Unauthenticated,
        RateLimitExceeded,
        TransientIO,
    )
}


def error_from_dict(body: Dict[str, Any]) -> ChatError:
    """Rebuild a domain error from an API response body."""
    code = str(body.get("error_code", ChatError.default_error_code))
    cls = ERRORS_BY_CODE.get(str(body.get("error_type", code)), ChatError)
    return cls(str(body.get("error", "request failed")), error_code=code, details=body.get("details"))
