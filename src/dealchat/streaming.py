"""Streaming parser: raw backend chunks to a uniform sequence of typed events.

Each backend dialect has a normalizer turning one raw chunk into a
:class:`StreamDelta` (or ``None`` for chunks that carry nothing of interest).
:func:`fold_delta` is the whole state machine: it takes the current
:class:`ParserState` and one delta, mutates the state and returns the events
to emit. :func:`parse_stream` drives a :class:`StreamHandle` through it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import inspect
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Literal
import uuid

from dealchat.backends._errors import wrap_backend_error
from dealchat.backends.models import ToolCall, Usage
from dealchat.config import ExtractionTuning
from dealchat.errors import BackendError, ErrorKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from dealchat.backends.models import StreamHandle

logger = logging.getLogger(__name__)

EventType = Literal[
    "start",
    "text",
    "thinking",
    "tool_call_delta",
    "deals",
    "coupons",
    "dealIds",
    "error",
    "done",
]

_DEFAULT_TUNING = ExtractionTuning()


@dataclass(frozen=True)
class StreamEvent:
    """One typed event relayed to the caller."""

    type: EventType
    content: str | None = None
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Flatten to the JSON shape sent over server-sent events."""
        out: dict[str, Any] = {"type": self.type}
        if self.content is not None:
            out["content"] = self.content
        if isinstance(self.data, dict):
            out.update(self.data)
        elif self.data is not None:
            out[self.type] = self.data
        return out


@dataclass(frozen=True)
class ToolCallDelta:
    """A fragment of a streamed tool call."""

    #: Position of the call; ``None`` means "a new, complete call".
    index: int | None
    id: str | None = None
    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class StreamDelta:
    """One normalized chunk."""

    text: str = ""
    reasoning: str = ""
    tool_calls: tuple[ToolCallDelta, ...] = ()
    finish_reason: str | None = None
    usage: Usage | None = None


@dataclass
class _ToolCallFragment:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class ParserState:
    """Everything the parser remembers between deltas."""

    inside_reasoning: bool = False
    tool_calls: dict[int, _ToolCallFragment] = field(default_factory=dict)
    text: str = ""
    reasoning: str = ""
    #: Trailing fragment that may be the start of a reasoning tag.
    pending: str = ""
    finish_reason: str | None = None
    usage: Usage | None = None

    def completed_tool_calls(self) -> list[ToolCall]:
        """Merged tool calls in index order."""
        calls: list[ToolCall] = []
        for index in sorted(self.tool_calls):
            frag = self.tool_calls[index]
            if not frag.name:
                continue
            calls.append(
                ToolCall(
                    id=frag.id or f"call_{index}",
                    name=frag.name,
                    arguments=frag.arguments or "{}",
                )
            )
        return calls


class _TagSet:
    """Compiled opening/closing tag patterns plus their literal forms."""

    def __init__(self, tuning: ExtractionTuning) -> None:
        opens = sorted({o for o, _ in tuning.reasoning_tags}, key=len, reverse=True)
        closes = sorted({c for _, c in tuning.reasoning_tags}, key=len, reverse=True)
        self.open_re = re.compile(
            "<(?:" + "|".join(re.escape(t) for t in opens) + ")>", re.IGNORECASE
        )
        self.close_re = re.compile(
            "</(?:" + "|".join(re.escape(t) for t in closes) + ")>", re.IGNORECASE
        )
        self.open_tags = tuple(f"<{t.lower()}>" for t in opens)
        self.close_tags = tuple(f"</{t.lower()}>" for t in closes)


def _partial_tag_length(text: str, tags: tuple[str, ...]) -> int:
    """Length of a trailing fragment of *text* that could still become a tag."""
    start = text.rfind("<")
    if start == -1:
        return 0
    tail = text[start:].lower()
    if any(tag.startswith(tail) and tag != tail for tag in tags):
        return len(text) - start
    return 0


def _route_text(state: ParserState, text: str, tags: _TagSet) -> list[StreamEvent]:
    """Split *text* at reasoning tags, routing each piece to text or thinking.

    A trailing fragment such as ``"</thi"`` is kept in ``state.pending`` and
    rejoined with the next delta, so tags split across chunks still switch
    the state.
    """
    text = state.pending + text
    state.pending = ""
    events: list[StreamEvent] = []
    while text:
        inside = state.inside_reasoning
        match = (tags.close_re if inside else tags.open_re).search(text)
        if match is None:
            held = _partial_tag_length(text, tags.close_tags if inside else tags.open_tags)
            if held:
                text, state.pending = text[:-held], text[-held:]
            if text:
                events.append(_append(state, text))
            break
        before, text = text[: match.start()], text[match.end() :]
        if before:
            events.append(_append(state, before))
        state.inside_reasoning = not inside
    return events


def _append(state: ParserState, piece: str) -> StreamEvent:
    if state.inside_reasoning:
        state.reasoning += piece
        return StreamEvent("thinking", piece)
    state.text += piece
    return StreamEvent("text", piece)


def flush_pending(state: ParserState) -> list[StreamEvent]:
    """Release a held-back tag fragment once the stream has ended."""
    if not state.pending:
        return []
    piece, state.pending = state.pending, ""
    return [_append(state, piece)]


def _merge_usage(current: Usage | None, new: Usage) -> Usage:
    # Vendors report cumulative counts, possibly split across chunks.
    if current is None:
        return new
    return Usage(
        input_tokens=max(current.input_tokens, new.input_tokens),
        output_tokens=max(current.output_tokens, new.output_tokens),
        estimated=current.estimated and new.estimated,
    )


def fold_delta(
    state: ParserState,
    delta: StreamDelta,
    tuning: ExtractionTuning = _DEFAULT_TUNING,
) -> list[StreamEvent]:
    """Apply one delta to *state* and return the events it produces."""
    events: list[StreamEvent] = []

    if delta.reasoning:
        state.reasoning += delta.reasoning
        events.append(StreamEvent("thinking", delta.reasoning))

    if delta.text:
        events.extend(_route_text(state, delta.text, _TagSet(tuning)))

    for tcd in delta.tool_calls:
        index = tcd.index
        if index is None:
            index = max(state.tool_calls, default=-1) + 1
        frag = state.tool_calls.setdefault(index, _ToolCallFragment())
        if tcd.id:
            frag.id = tcd.id
        frag.name += tcd.name
        frag.arguments += tcd.arguments
        events.append(
            StreamEvent(
                "tool_call_delta",
                data={
                    "index": index,
                    "id": frag.id or None,
                    "name": frag.name,
                    "arguments": tcd.arguments,
                },
            )
        )

    if delta.finish_reason:
        state.finish_reason = delta.finish_reason
    if delta.usage is not None:
        state.usage = _merge_usage(state.usage, delta.usage)
    return events


def _get(obj: Any, key: str) -> Any:
    """Read *key* from SDK objects and plain dicts alike."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def normalize_openai_chunk(chunk: Any) -> StreamDelta | None:
    """Chat-completions chunk (OpenAI, OpenRouter, mock)."""
    usage: Usage | None = None
    usage_raw = _get(chunk, "usage")
    if usage_raw is not None:
        usage = Usage(
            input_tokens=int(_get(usage_raw, "prompt_tokens") or 0),
            output_tokens=int(_get(usage_raw, "completion_tokens") or 0),
        )

    choices = _get(chunk, "choices") or []
    if not choices:
        return StreamDelta(usage=usage) if usage is not None else None
    choice = choices[0]
    delta = _get(choice, "delta")

    tool_calls = tuple(
        ToolCallDelta(
            index=_get(tc, "index"),
            id=_get(tc, "id"),
            name=_get(_get(tc, "function"), "name") or "",
            arguments=_get(_get(tc, "function"), "arguments") or "",
        )
        for tc in _get(delta, "tool_calls") or []
    )
    text = _get(delta, "content") or ""
    reasoning = _get(delta, "reasoning") or _get(delta, "reasoning_content") or ""
    finish_reason = _get(choice, "finish_reason")

    if not (text or reasoning or tool_calls or finish_reason or usage):
        return None
    return StreamDelta(
        text=text,
        reasoning=reasoning,
        tool_calls=tool_calls,
        finish_reason=finish_reason,
        usage=usage,
    )


_GEMINI_BLOCKED = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"})


def normalize_gemini_chunk(chunk: Any) -> StreamDelta | None:
    """``GenerateContentResponse`` chunk from ``generate_content_stream``."""
    candidates = _get(chunk, "candidates") or []
    candidate = candidates[0] if candidates else None

    finish_raw = _get(candidate, "finish_reason")
    finish_reason: str | None = None
    if finish_raw is not None:
        name = getattr(finish_raw, "name", None)
        finish_reason = name if isinstance(name, str) else str(finish_raw)
        if finish_reason in _GEMINI_BLOCKED:
            raise BackendError(
                "Response blocked by safety filters: SAFETY",
                kind=ErrorKind.CONTENT_FILTER,
                backend="gemini",
                phase="stream",
            )
        if finish_reason == "STOP":
            finish_reason = "stop"

    text_parts: list[str] = []
    reasoning_parts: list[str] = []
    tool_calls: list[ToolCallDelta] = []
    for part in _get(_get(candidate, "content"), "parts") or []:
        fc = _get(part, "function_call")
        if fc is not None:
            tool_calls.append(
                ToolCallDelta(
                    index=None,
                    id=_get(fc, "id") or f"call_{uuid.uuid4().hex[:8]}",
                    name=str(_get(fc, "name") or ""),
                    arguments=json.dumps(_get(fc, "args") or {}),
                )
            )
            continue
        text = _get(part, "text")
        if not text:
            continue
        if _get(part, "thought"):
            reasoning_parts.append(text)
        else:
            text_parts.append(text)

    usage: Usage | None = None
    um = _get(chunk, "usage_metadata")
    if um is not None:
        prompt = _get(um, "prompt_token_count")
        output = _get(um, "candidates_token_count")
        if prompt is not None or output is not None:
            usage = Usage(input_tokens=int(prompt or 0), output_tokens=int(output or 0))

    if not (text_parts or reasoning_parts or tool_calls or finish_reason or usage):
        return None
    return StreamDelta(
        text="".join(text_parts),
        reasoning="".join(reasoning_parts),
        tool_calls=tuple(tool_calls),
        finish_reason=finish_reason,
        usage=usage,
    )


def normalize_anthropic_event(event: Any) -> StreamDelta | None:
    """Messages API stream event."""
    event_type = _get(event, "type")

    if event_type == "message_start":
        usage_raw = _get(_get(event, "message"), "usage")
        if usage_raw is None:
            return None
        return StreamDelta(
            usage=Usage(
                input_tokens=int(_get(usage_raw, "input_tokens") or 0),
                output_tokens=int(_get(usage_raw, "output_tokens") or 0),
            )
        )

    if event_type == "content_block_start":
        block = _get(event, "content_block")
        if _get(block, "type") != "tool_use":
            return None
        return StreamDelta(
            tool_calls=(
                ToolCallDelta(
                    index=_get(event, "index"),
                    id=_get(block, "id"),
                    name=_get(block, "name") or "",
                ),
            )
        )

    if event_type == "content_block_delta":
        delta = _get(event, "delta")
        delta_type = _get(delta, "type")
        if delta_type == "text_delta":
            return StreamDelta(text=_get(delta, "text") or "")
        if delta_type == "thinking_delta":
            return StreamDelta(reasoning=_get(delta, "thinking") or "")
        if delta_type == "input_json_delta":
            return StreamDelta(
                tool_calls=(
                    ToolCallDelta(
                        index=_get(event, "index"),
                        arguments=_get(delta, "partial_json") or "",
                    ),
                )
            )
        return None

    if event_type == "message_delta":
        usage_raw = _get(event, "usage")
        return StreamDelta(
            finish_reason=_get(_get(event, "delta"), "stop_reason"),
            usage=Usage(output_tokens=int(_get(usage_raw, "output_tokens") or 0))
            if usage_raw is not None
            else None,
        )

    return None


NORMALIZERS: dict[str, Callable[[Any], StreamDelta | None]] = {
    "openai": normalize_openai_chunk,
    "gemini": normalize_gemini_chunk,
    "anthropic": normalize_anthropic_event,
}


async def emit(
    on_event: Callable[[StreamEvent], Awaitable[None] | None], event: StreamEvent
) -> None:
    """Deliver *event* to a sync or async callback."""
    result = on_event(event)
    if inspect.isawaitable(result):
        await result


async def parse_stream(
    handle: StreamHandle,
    on_event: Callable[[StreamEvent], Awaitable[None] | None],
    *,
    tuning: ExtractionTuning = _DEFAULT_TUNING,
) -> ParserState:
    """Consume *handle* once, relaying events, and return the final state.

    The handle is always released, including on cancellation. Failures while
    iterating surface as ``STREAM_ERROR`` (or ``TIMEOUT``) backend errors.
    """
    state = ParserState()
    normalize = NORMALIZERS[handle.dialect]
    try:
        async for chunk in handle:
            delta = normalize(chunk)
            if delta is None:
                continue
            for event in fold_delta(state, delta, tuning):
                await emit(on_event, event)
        for event in flush_pending(state):
            await emit(on_event, event)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise wrap_backend_error(
            e,
            backend=handle.backend,
            phase="stream",
            message=f"{handle.backend} stream failed",
        ) from e
    finally:
        try:
            await handle.aclose()
        except Exception as close_exc:  # noqa: BLE001
            logger.debug("Stream close failed for %s: %s", handle.backend, close_exc)
    return state
