"""Response cache and per-identity rate limiter.

The orchestrator only depends on the :class:`ResponseCache` protocol.
:class:`MemoryCache` is the in-process reference implementation: TTL maps per
match kind plus sliding-window request counters.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import hashlib
import logging
import time
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from dealchat.config import CacheTtls, RateLimits

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

MatchKind = Literal["exact", "semantic", "tool"]
Window = Literal["minute", "day"]

_WINDOW_SECONDS: dict[str, float] = {"minute": 60.0, "day": 86_400.0}


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of a rate-limit check."""

    limited: bool
    message: str | None = None
    #: Seconds until the identity may try again.
    retry_after: float | None = None
    remaining: int | None = None


@runtime_checkable
class ResponseCache(Protocol):
    """Cache and rate-limiter operations the orchestrator consumes."""

    async def get(self, key: str, match_kind: MatchKind = "exact") -> Any | None:
        """Return the cached value, or None when absent or expired."""
        ...

    async def set(self, key: str, value: Any, match_kind: MatchKind = "exact") -> None:
        """Store *value* under *key* with the TTL for *match_kind*."""
        ...

    async def check_rate_limit(self, identity: str) -> RateLimitStatus:
        """Check both windows for *identity* without counting the request."""
        ...

    async def increment_query_count(self, identity: str, window: Window) -> None:
        """Count one completed request against *window*."""
        ...


def compute_cache_key(text: str, match_kind: MatchKind = "exact") -> str:
    """Deterministic key for a trimmed message."""
    digest = hashlib.sha256(text.strip().encode("utf-8")).hexdigest()[:32]
    return f"ai:{match_kind}:{digest}"


@dataclass
class MemoryCache:
    """In-memory :class:`ResponseCache` with TTL expiry and sliding windows.

    Single-process only; counters and entries vanish on restart. Expired
    entries and idle counters are swept on writes, at most once per
    ``sweep_interval_s``.
    """

    ttls: CacheTtls = field(default_factory=CacheTtls)
    limits: RateLimits = field(default_factory=RateLimits)
    clock: Callable[[], float] = time.time
    sweep_interval_s: float = 60.0
    _entries: dict[str, tuple[Any, float]] = field(default_factory=dict)
    _hits: dict[tuple[str, Window], deque[float]] = field(default_factory=dict)
    _last_sweep: float = float("-inf")
    hits: int = 0
    misses: int = 0

    def _ttl(self, match_kind: MatchKind) -> int:
        return int(getattr(self.ttls, match_kind, self.ttls.exact))

    async def get(self, key: str, match_kind: MatchKind = "exact") -> Any | None:
        """Get value if present and not expired."""
        cache_key = compute_cache_key(key, match_kind)
        entry = self._entries.get(cache_key)
        if entry is None:
            self.misses += 1
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[cache_key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    async def set(self, key: str, value: Any, match_kind: MatchKind = "exact") -> None:
        """Store value with expiration time."""
        self._sweep()
        expires_at = self.clock() + max(0, self._ttl(match_kind))
        self._entries[compute_cache_key(key, match_kind)] = (value, expires_at)

    def _trim(self, hits: deque[float], window: Window) -> None:
        horizon = self.clock() - _WINDOW_SECONDS[window]
        while hits and hits[0] <= horizon:
            hits.popleft()

    def _window(self, identity: str, window: Window) -> deque[float]:
        """Live timestamps for one window; idle windows are not stored."""
        key = (identity, window)
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        self._trim(hits, window)
        if not hits:
            del self._hits[key]
        return hits

    def _sweep(self) -> None:
        now = self.clock()
        if now - self._last_sweep < self.sweep_interval_s:
            return
        self._last_sweep = now
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        idle = []
        for key, hits in self._hits.items():
            self._trim(hits, key[1])
            if not hits:
                idle.append(key)
        for key in idle:
            del self._hits[key]
        if expired or idle:
            logger.debug("Swept %d entries and %d idle counters", len(expired), len(idle))

    async def check_rate_limit(self, identity: str) -> RateLimitStatus:
        """Check the minute window, then the day window."""
        limits = self.limits.for_identity(identity)
        minute = self._window(identity, "minute")
        day = self._window(identity, "day")
        now = self.clock()

        if len(minute) >= limits.per_minute:
            retry_after = (minute[0] + _WINDOW_SECONDS["minute"] - now) if minute else 60.0
            return RateLimitStatus(
                limited=True,
                message="Too many requests. Please wait a minute and try again.",
                retry_after=max(0.0, retry_after),
                remaining=0,
            )
        if len(day) >= limits.per_day:
            retry_after = (day[0] + _WINDOW_SECONDS["day"] - now) if day else 86_400.0
            message = "Daily query limit reached. Try again tomorrow."
            if identity.startswith("ip:"):
                message += " Sign in for a higher limit."
            return RateLimitStatus(
                limited=True,
                message=message,
                retry_after=max(0.0, retry_after),
                remaining=0,
            )
        return RateLimitStatus(
            limited=False,
            remaining=min(limits.per_minute - len(minute), limits.per_day - len(day)),
        )

    async def increment_query_count(self, identity: str, window: Window) -> None:
        """Record one request in *window*."""
        self._sweep()
        key = (identity, window)
        hits = self._hits.setdefault(key, deque())
        self._trim(hits, window)
        hits.append(self.clock())

    def stats(self) -> dict[str, int]:
        """Hit/miss counters, stored entry count and tracked counter windows."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": len(self._entries),
            "counters": len(self._hits),
        }

    def clear(self) -> None:
        """Drop all entries and counters."""
        self._entries.clear()
        self._hits.clear()
        self.hits = 0
        self.misses = 0
