"""Bounded async retry for backend completion calls.

Retries live inside the Backend Client Layer only; the orchestrator never
retries on its own. Attempts are capped so tail latency stays predictable.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from dealchat.errors import BackendError, ErrorKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Kinds that a second attempt against the same backend cannot fix.
_NEVER_RETRY = frozenset(
    {
        ErrorKind.CONFIG_ERROR,
        ErrorKind.AUTH_ERROR,
        ErrorKind.INVALID_REQUEST,
        ErrorKind.CONTENT_FILTER,
    }
)

MAX_ATTEMPTS_CEILING = 3

# Statuses worth a second attempt when the error kind alone is ambiguous.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional full jitter."""

    max_attempts: int = 2
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 4.0
    jitter: bool = True
    max_elapsed_s: float | None = 10.0

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_CEILING:
            raise ValueError(
                f"RetryPolicy.max_attempts must be between 1 and {MAX_ATTEMPTS_CEILING}"
            )
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")


def should_retry(exc: BaseException) -> bool:
    """Return True when a completion exception should be retried.

    Contract:
    - Cancellation is never retried.
    - Only mapped ``BackendError`` values are retried, and only when the
      backend marked them retryable (or the status code is a known transient).
    - Non-retryable kinds are never retried regardless of status.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if not isinstance(exc, BackendError):
        return False
    if exc.kind in _NEVER_RETRY:
        return False
    return exc.retryable or (
        isinstance(exc.status_code, int) and exc.status_code in RETRYABLE_STATUS_CODES
    )


def compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    """Delay before retry number *retry_index* (1-based)."""
    base = policy.initial_delay_s * (
        policy.backoff_multiplier ** max(0, retry_index - 1)
    )
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    return random.random() * base  # noqa: S311


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry,
) -> T:
    """Run an async factory with bounded retries."""
    start = time.monotonic()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise

            delay = compute_backoff_delay(policy, retry_index=attempt)
            retry_after = getattr(exc, "retry_after_s", None)
            if isinstance(retry_after, (int, float)) and retry_after >= 0:
                delay = max(delay, float(retry_after))

            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            logger.debug(
                "Retrying after %s (attempt %d/%d, delay=%.2fs)",
                type(exc).__name__,
                attempt,
                policy.max_attempts,
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover
