"""Domain models for the backend transport layer."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable

Role = Literal["system", "user", "assistant", "tool"]

#: Wire dialect of a raw stream; selects the delta normalizer.
Dialect = Literal["openai", "gemini", "anthropic"]


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model.

    ``arguments`` is the raw JSON string; it is validated against the tool's
    parameter schema only when the call is executed.
    """

    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ChatMessage:
    """A conversational message turn."""

    role: Role
    content: str | None = ""
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    #: Tool name for ``tool`` messages (Gemini needs it for function responses).
    name: str | None = None


@dataclass(frozen=True)
class ToolDefinition:
    """Backend-neutral tool declaration with a JSON-schema parameter block."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class CompletionRequest:
    """A normalized completion call."""

    model: str
    messages: tuple[ChatMessage, ...]
    tools: tuple[ToolDefinition, ...] | None = None
    stream: bool = False
    max_tokens: int = 2000
    temperature: float | None = 0.7


@dataclass(frozen=True)
class Usage:
    """Token counts of one or more completion calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    #: True when counts were approximated from text length.
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        """Input plus output tokens."""
        return self.input_tokens + self.output_tokens

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            estimated=self.estimated or other.estimated,
        )

    def to_dict(self) -> dict[str, int]:
        """Serialize with provider-agnostic keys."""
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class BackendResponse:
    """A fully-populated non-streaming completion result."""

    content: str = ""
    tool_calls: list[ToolCall] | None = None
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)
    cost: float = 0.0
    latency_ms: int = 0
    model: str = ""
    backend: str = ""
    reasoning: str | None = None


@dataclass
class StreamHandle:
    """A single-use raw stream from one backend.

    ``raw_stream`` may be iterated forward exactly once. Only the streaming
    parser looks inside it; ``dialect`` tells the parser how to read chunks.
    """

    backend: str
    model: str
    dialect: Dialect
    raw_stream: AsyncIterable[Any]
    start_time: float = field(default_factory=time.monotonic)
    _close: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    def __aiter__(self) -> AsyncIterator[Any]:
        return self.raw_stream.__aiter__()

    @property
    def closed(self) -> bool:
        """Whether :meth:`aclose` already ran."""
        return self._closed

    async def aclose(self) -> None:
        """Release the underlying connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()
            return
        closer = getattr(self.raw_stream, "aclose", None)
        if callable(closer):
            await closer()
