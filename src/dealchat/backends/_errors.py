"""Shared backend-side error helpers.

Every vendor SDK exception is mapped to a :class:`BackendError` carrying an
:class:`ErrorKind`, so the retry loop and the orchestrator never inspect
vendor exception types.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx

from dealchat.config import API_KEY_ENV_VARS
from dealchat.errors import (
    BackendError,
    ErrorKind,
    RateLimitError,
    StreamError,
    _walk_exception_chain,
)


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status", "code"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _extract_retry_info_seconds(exc: BaseException) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in error details.

    Gemini ``ClientError`` exposes the parsed JSON body via ``.details``::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(exc, "details", None)
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is not None:
            raw: Any = None
            try:
                raw = headers.get("Retry-After")
            except Exception:
                raw = None
            if isinstance(raw, str) and raw.strip():
                try:
                    seconds = float(raw)
                except ValueError:
                    seconds = -1.0
                if seconds >= 0:
                    return seconds

        retry_info = _extract_retry_info_seconds(e)
        if retry_info is not None:
            return retry_info
    return None


def _is_timeout(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return True
        if "Timeout" in type(e).__name__:
            return True
    return False


def _is_connect_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, httpx.ConnectError):
            return True
        if type(e).__name__ == "APIConnectionError":
            return True
    return False


def classify_error(
    exc: BaseException, *, status_code: int | None, phase: str
) -> ErrorKind:
    """Pick the :class:`ErrorKind` for a vendor exception.

    Status codes win over message substrings; substrings only cover SDKs that
    raise plain exceptions.
    """
    text = str(exc)
    lower = text.lower()

    if status_code == 429 or "quota" in lower or "rate limit" in lower:
        return ErrorKind.RATE_LIMIT
    if status_code in {401, 403} or "api key" in lower or "api_key" in lower:
        return ErrorKind.AUTH_ERROR
    if "SAFETY" in text or "content filter" in lower or "content_filter" in lower:
        return ErrorKind.CONTENT_FILTER
    if status_code in {400, 404, 422} or "invalid" in lower:
        return ErrorKind.INVALID_REQUEST
    if status_code in {408, 504} or _is_timeout(exc):
        return ErrorKind.TIMEOUT
    if _is_connect_error(exc):
        return ErrorKind.CONFIG_ERROR
    if phase == "stream":
        return ErrorKind.STREAM_ERROR
    return ErrorKind.UNKNOWN_ERROR


def _hint_for(kind: ErrorKind, backend: str) -> str | None:
    if kind is ErrorKind.AUTH_ERROR:
        env_var = API_KEY_ENV_VARS.get(backend, "the backend API key")
        return f"Check credentials/permissions (try setting {env_var})."
    if kind is ErrorKind.CONFIG_ERROR:
        return f"Check that {backend} is reachable from this host."
    if kind is ErrorKind.RATE_LIMIT:
        return "Back off and retry after the cooldown."
    return None


def wrap_backend_error(
    exc: BaseException,
    *,
    backend: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
) -> BackendError:
    """Map vendor SDK exceptions into BackendError with stable retry metadata."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped; fill in missing context only.
    if isinstance(exc, BackendError):
        if exc.backend is None:
            exc.backend = backend
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)
    kind = classify_error(exc, status_code=status_code, phase=phase)

    err_cls: type[BackendError] = BackendError
    if kind is ErrorKind.RATE_LIMIT:
        err_cls = RateLimitError
    elif kind is ErrorKind.STREAM_ERROR:
        err_cls = StreamError

    msg = message or f"{backend} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc)
    return err_cls(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        kind=kind,
        hint=hint if hint is not None else _hint_for(kind, backend),
        status_code=status_code if status_code is not None else kind.status_code,
        retry_after_s=retry_after_s,
        backend=backend,
        phase=phase,
    )
