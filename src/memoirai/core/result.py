"""Tagged results and the user-facing error taxonomy.

Expected failures (provider errors, missing records, unlinkable connections)
travel as values instead of exceptions so that callers can always render a
short message and keep the session usable.

Example:
    >>> result = Result.failure(ErrorInfo.from_code(ErrorCode.RATE_LIMITED))
    >>> result.ok
    False
    >>> result.error.message
    'Too many requests right now. Please wait a moment and try again.'
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Fixed set of failure causes surfaced to callers."""

    INVALID_INPUT = "invalid_input"
    OFFLINE = "offline"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CONTENT_BLOCKED = "content_blocked"
    STORE_ERROR = "store_error"
    NOT_FOUND = "not_found"
    LINK_FAILED = "link_failed"
    PERMISSION_DENIED = "permission_denied"
    NO_DEVICE = "no_device"
    UNSUPPORTED_FORMAT = "unsupported_format"
    OVERSIZE_PAYLOAD = "oversize_payload"
    NO_SPEECH = "no_speech"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_INPUT: "That request was missing something. Please check it and try again.",
    ErrorCode.OFFLINE: "You appear to be offline. Please check your internet connection.",
    ErrorCode.MISSING_CREDENTIAL: "The AI assistant is not configured. Please add an API key.",
    ErrorCode.INVALID_CREDENTIAL: "The configured API key was rejected. Please update it.",
    ErrorCode.RATE_LIMITED: "Too many requests right now. Please wait a moment and try again.",
    ErrorCode.QUOTA_EXCEEDED: "The AI usage limit has been reached. Please try again later.",
    ErrorCode.SERVER_ERROR: "The AI service is having trouble. Please try again shortly.",
    ErrorCode.TIMEOUT: "The AI service took too long to answer. Please try again.",
    ErrorCode.CONTENT_BLOCKED: "That message could not be processed by the AI service.",
    ErrorCode.STORE_ERROR: "Your data could not be saved or loaded. Please try again.",
    ErrorCode.NOT_FOUND: "The requested story or connection could not be found.",
    ErrorCode.LINK_FAILED: "The connection could not be linked to this story. Please try again.",
    ErrorCode.PERMISSION_DENIED: "Microphone access was denied. Please allow access and retry.",
    ErrorCode.NO_DEVICE: "No microphone was found. Please connect one and retry.",
    ErrorCode.UNSUPPORTED_FORMAT: "That audio format is not supported. Use WebM, MP4, WAV or MP3.",
    ErrorCode.OVERSIZE_PAYLOAD: "That recording is too large. The maximum size is 25MB.",
    ErrorCode.NO_SPEECH: "No speech was detected. Please try recording again.",
    ErrorCode.UNKNOWN: "Something went wrong. Please try again.",
}

RETRIABLE_CODES: frozenset[ErrorCode] = frozenset(
    {ErrorCode.OFFLINE, ErrorCode.RATE_LIMITED, ErrorCode.SERVER_ERROR, ErrorCode.TIMEOUT}
)


@dataclass(frozen=True)
class ErrorInfo:
    """Structured failure carried by a failed :class:`Result`.

    Attributes:
        code: Failure cause.
        message: Short human-readable message, safe to show to the user.
        retriable: Whether retrying the same operation may succeed.
    """

    code: ErrorCode
    message: str
    retriable: bool = False

    @classmethod
    def from_code(cls, code: ErrorCode) -> "ErrorInfo":
        return cls(code=code, message=USER_MESSAGES[code], retriable=code in RETRIABLE_CODES)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success or failure of an operation.

    Exactly one of ``value`` (on success) or ``error`` (on failure) is meaningful.
    """

    ok: bool
    value: T | None = None
    error: ErrorInfo | None = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorInfo | ErrorCode) -> "Result[T]":
        if isinstance(error, ErrorCode):
            error = ErrorInfo.from_code(error)
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value or raise ``ValueError`` for a failed result."""
        if not self.ok:
            raise ValueError(f"Result is a failure: {self.error.code.value if self.error else '?'}")
        return self.value  # type: ignore[return-value]
