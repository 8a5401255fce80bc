"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off orchestrator wiring as coverage expands.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dealchat.backends.models import BackendResponse, ToolCall, ToolDefinition, Usage
from dealchat.cache import MemoryCache
from dealchat.classifier import Classification
from dealchat.orchestrator import ChatOrchestrator
from dealchat.streaming import StreamEvent
from dealchat.tools import BUILTIN_TOOLS
from tests.conftest import FakeBackend, FakeClassifier


@dataclass
class EventSink:
    """Collects stream events for assertions."""

    events: list[StreamEvent] = field(default_factory=list)

    def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def of(self, event_type: str) -> list[StreamEvent]:
        return [e for e in self.events if e.type == event_type]

    def text(self) -> str:
        return "".join(e.content or "" for e in self.of("text"))


@dataclass
class CountingCache(MemoryCache):
    """MemoryCache that records get/set/increment calls."""

    gets: int = 0
    sets: int = 0
    increments: list[tuple[str, str]] = field(default_factory=list)

    async def get(self, key: str, match_kind: Any = "exact") -> Any | None:
        self.gets += 1
        return await super().get(key, match_kind)

    async def set(self, key: str, value: Any, match_kind: Any = "exact") -> None:
        self.sets += 1
        await super().set(key, value, match_kind)

    async def increment_query_count(self, identity: str, window: Any) -> None:
        self.increments.append((identity, window))
        await super().increment_query_count(identity, window)


@dataclass
class BrokenTools:
    """Tool executor whose host backend fails with a plain exception."""

    error: Exception = field(default_factory=lambda: RuntimeError("db down"))
    calls: int = 0

    def definitions(self) -> tuple[ToolDefinition, ...]:
        return tuple(spec.definition() for spec in BUILTIN_TOOLS)

    async def execute(self, name: str, arguments: Any) -> dict[str, Any]:
        self.calls += 1
        raise self.error


def response(
    content: str = '{"message": "ok", "dealIds": []}',
    *,
    tool_calls: list[ToolCall] | None = None,
    backend: str = "openai",
    model: str = "gpt-4o-mini",
    usage: Usage | None = None,
    cost: float = 0.001,
) -> BackendResponse:
    return BackendResponse(
        content=content,
        tool_calls=tool_calls,
        finish_reason="tool_calls" if tool_calls else "stop",
        usage=usage or Usage(input_tokens=10, output_tokens=5),
        cost=cost,
        model=model,
        backend=backend,
    )


def make_orchestrator(
    config: Any,
    *,
    primary: FakeBackend | None = None,
    secondary: FakeBackend | None = None,
    classification: Classification | None = None,
    cache: MemoryCache | None = None,
    tools: Any = None,
) -> tuple[ChatOrchestrator, FakeBackend, FakeClassifier, MemoryCache]:
    primary = primary if primary is not None else FakeBackend()
    classifier = FakeClassifier(classification or Classification(intent="general"))
    cache = cache if cache is not None else CountingCache(
        config.cache_ttls, config.rate_limits
    )
    orchestrator = ChatOrchestrator(
        config,
        primary=primary,
        secondary=secondary,
        cache=cache,
        classifier=classifier,
        tools=tools,
    )
    return orchestrator, primary, classifier, cache
