"""Exception hierarchy and error taxonomy for dealchat."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class ErrorKind(str, Enum):
    """Normalized failure categories shared by every backend.

    Each kind carries the default ``retryable`` flag and HTTP status used when
    the failure is surfaced to a caller.
    """

    CONFIG_ERROR = "CONFIG_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    TIMEOUT = "TIMEOUT"
    CONTENT_FILTER = "CONTENT_FILTER"
    STREAM_ERROR = "STREAM_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def retryable(self) -> bool:
        """Default retry semantics for this kind."""
        return self in _RETRYABLE_KINDS

    @property
    def status_code(self) -> int:
        """Default HTTP-equivalent status for this kind."""
        return _DEFAULT_STATUS[self]


_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.TIMEOUT,
        ErrorKind.STREAM_ERROR,
        ErrorKind.UNKNOWN_ERROR,
    }
)

_DEFAULT_STATUS: dict[ErrorKind, int] = {
    ErrorKind.CONFIG_ERROR: 503,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.AUTH_ERROR: 500,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CONTENT_FILTER: 400,
    ErrorKind.STREAM_ERROR: 502,
    ErrorKind.UNKNOWN_ERROR: 500,
}


class DealChatError(Exception):
    """Base exception for all dealchat errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(DealChatError):
    """Configuration validation or resolution failed."""


class ToolError(DealChatError):
    """A tool call could not be executed (unknown name, bad arguments, handler failure)."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        tool_name: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.tool_name = tool_name


class BackendError(DealChatError):
    """A backend call failed.

    Backends attach a normalized ``kind`` plus retry metadata so the retry
    loop and the orchestrator never inspect backend-native exception types.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN_ERROR,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        backend: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.kind = kind
        self.retryable = kind.retryable if retryable is None else retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.backend = backend
        self.phase = phase


class RateLimitError(BackendError):
    """Backend rate limit exceeded (HTTP 429)."""

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs.setdefault("kind", ErrorKind.RATE_LIMIT)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class StreamError(BackendError):
    """A stream could not be opened or broke mid-iteration."""

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs.setdefault("kind", ErrorKind.STREAM_ERROR)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
