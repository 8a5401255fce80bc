"""Streaming parser tests: normalizers, the fold state machine, and stream driving."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from dealchat.backends.models import StreamHandle
from dealchat.errors import BackendError, ErrorKind, StreamError
from dealchat.streaming import (
    ParserState,
    StreamDelta,
    StreamEvent,
    ToolCallDelta,
    flush_pending,
    fold_delta,
    normalize_anthropic_event,
    normalize_gemini_chunk,
    normalize_openai_chunk,
    parse_stream,
)
from tests.conftest import aiter_chunks
from tests.helpers import EventSink

pytestmark = pytest.mark.unit


def _fold_all(deltas: list[StreamDelta]) -> tuple[ParserState, list[StreamEvent]]:
    state = ParserState()
    events: list[StreamEvent] = []
    for delta in deltas:
        events.extend(fold_delta(state, delta))
    return state, events


# =============================================================================
# Reasoning routing
# =============================================================================


def test_think_block_within_one_delta_is_routed_to_thinking() -> None:
    state, events = _fold_all(
        [StreamDelta(text='<think>plan it</think>{"message": "hi", "dealIds": []}')]
    )

    assert [(e.type, e.content) for e in events] == [
        ("thinking", "plan it"),
        ("text", '{"message": "hi", "dealIds": []}'),
    ]
    assert state.reasoning == "plan it"
    assert state.inside_reasoning is False


def test_reasoning_spanning_deltas_stays_in_thinking_until_close_tag() -> None:
    state, events = _fold_all(
        [
            StreamDelta(text="Sure. <thinking>step one"),
            StreamDelta(text=" step two"),
            StreamDelta(text="</thinking>Done"),
        ]
    )

    assert [e.type for e in events] == ["text", "thinking", "thinking", "text"]
    assert state.text == "Sure. Done"
    assert state.reasoning == "step one step two"


def test_mismatched_redacted_reasoning_pair_is_recognized() -> None:
    state, _ = _fold_all([StreamDelta(text="<think>x</redacted_reasoning>answer")])

    assert state.text == "answer"
    assert state.reasoning == "x"


def test_reasoning_field_and_text_in_same_delta_are_both_emitted() -> None:
    state, events = _fold_all([StreamDelta(text="A", reasoning="R")])

    assert [(e.type, e.content) for e in events] == [("thinking", "R"), ("text", "A")]
    assert state.text == "A"


def test_close_tag_split_across_deltas_still_ends_reasoning() -> None:
    state, events = _fold_all(
        [
            StreamDelta(text="<think>hmm</thi"),
            StreamDelta(text='nk>{"message":"hi"}'),
        ]
    )

    assert state.reasoning == "hmm"
    assert state.text == '{"message":"hi"}'
    assert state.pending == ""
    assert [e.type for e in events] == ["thinking", "text"]


def test_open_tag_split_across_deltas_starts_reasoning() -> None:
    state, _ = _fold_all(
        [StreamDelta(text="Sure <th"), StreamDelta(text="ink>plan</think>ok")]
    )

    assert state.text == "Sure ok"
    assert state.reasoning == "plan"


def test_trailing_fragment_that_never_becomes_a_tag_is_flushed() -> None:
    state, _ = _fold_all([StreamDelta(text="price <"), StreamDelta(text=" 5")])
    assert state.text == "price < 5"

    state, _ = _fold_all([StreamDelta(text="a <thin")])
    assert state.text == "a "
    assert [(e.type, e.content) for e in flush_pending(state)] == [("text", "<thin")]
    assert state.text == "a <thin"
    assert flush_pending(state) == []


@given(
    st.lists(
        st.text(alphabet=st.characters(exclude_characters="<>"), max_size=12),
        min_size=1,
        max_size=6,
    )
)
@settings(max_examples=50, deadline=None, derandomize=True)
def test_tag_free_text_passes_through_unchanged(pieces: list[str]) -> None:
    """Property: without tags, accumulated text equals the concatenated deltas."""
    state, events = _fold_all([StreamDelta(text=p) for p in pieces])

    assert state.text == "".join(pieces)
    assert all(e.type == "text" for e in events)


# =============================================================================
# Tool-call merging
# =============================================================================


def test_tool_call_fragments_merge_by_index() -> None:
    state, events = _fold_all(
        [
            StreamDelta(tool_calls=(ToolCallDelta(0, id="call_1", name="search"),)),
            StreamDelta(tool_calls=(ToolCallDelta(0, name="_deals", arguments='{"qu'),)),
            StreamDelta(tool_calls=(ToolCallDelta(0, arguments='ery": "tv"}'),)),
        ]
    )

    calls = state.completed_tool_calls()
    assert len(calls) == 1
    assert calls[0].id == "call_1"
    assert calls[0].name == "search_deals"
    assert calls[0].arguments == '{"query": "tv"}'
    assert [e.type for e in events] == ["tool_call_delta"] * 3
    assert events[-1].data["name"] == "search_deals"


def test_tool_calls_without_index_are_appended() -> None:
    state, _ = _fold_all(
        [
            StreamDelta(tool_calls=(ToolCallDelta(None, id="a", name="get_coupons"),)),
            StreamDelta(tool_calls=(ToolCallDelta(None, id="b", name="search_deals"),)),
        ]
    )

    assert [c.name for c in state.completed_tool_calls()] == [
        "get_coupons",
        "search_deals",
    ]


def test_usage_keeps_largest_cumulative_counts() -> None:
    from dealchat.backends.models import Usage

    state, _ = _fold_all(
        [
            StreamDelta(usage=Usage(input_tokens=30, output_tokens=1)),
            StreamDelta(usage=Usage(input_tokens=0, output_tokens=12)),
        ]
    )

    assert state.usage == Usage(input_tokens=30, output_tokens=12)


# =============================================================================
# Normalizers
# =============================================================================


def test_openai_normalizer_reads_sdk_objects_and_dicts() -> None:
    sdk_chunk = SimpleNamespace(
        choices=[
            SimpleNamespace(
                delta=SimpleNamespace(content="hi", tool_calls=None, reasoning=None),
                finish_reason=None,
            )
        ],
        usage=None,
    )
    assert normalize_openai_chunk(sdk_chunk) == StreamDelta(text="hi")
    assert normalize_openai_chunk({"choices": [{"delta": {}}]}) is None
    delta = normalize_openai_chunk(
        {"choices": [{"delta": {"reasoning_content": "hmm"}}]}
    )
    assert delta is not None and delta.reasoning == "hmm"


def test_gemini_normalizer_maps_stop_and_blocks_safety() -> None:
    chunk = SimpleNamespace(
        candidates=[
            SimpleNamespace(
                finish_reason=SimpleNamespace(name="STOP"),
                content=SimpleNamespace(
                    parts=[SimpleNamespace(text="hey", thought=False, function_call=None)]
                ),
            )
        ],
        usage_metadata=None,
    )
    delta = normalize_gemini_chunk(chunk)
    assert delta is not None
    assert (delta.text, delta.finish_reason) == ("hey", "stop")

    blocked = SimpleNamespace(
        candidates=[
            SimpleNamespace(
                finish_reason=SimpleNamespace(name="SAFETY"),
                content=None,
            )
        ],
        usage_metadata=None,
    )
    with pytest.raises(BackendError) as exc:
        normalize_gemini_chunk(blocked)
    assert exc.value.kind is ErrorKind.CONTENT_FILTER


def test_anthropic_normalizer_handles_tool_use_stream() -> None:
    start = normalize_anthropic_event(
        {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "tu_1", "name": "get_coupons"},
        }
    )
    args = normalize_anthropic_event(
        {
            "type": "content_block_delta",
            "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"store": "Target"}'},
        }
    )
    stop = normalize_anthropic_event(
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": None}
    )
    assert start is not None and args is not None and stop is not None

    state, _ = _fold_all([start, args, stop])
    calls = state.completed_tool_calls()
    assert calls[0].name == "get_coupons"
    assert calls[0].arguments == '{"store": "Target"}'
    assert state.finish_reason == "tool_use"


# =============================================================================
# parse_stream
# =============================================================================


def _handle(chunks: Any, *, dialect: str = "openai") -> StreamHandle:
    return StreamHandle(
        backend="openai", model="gpt-4o-mini", dialect=dialect, raw_stream=chunks
    )  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_parse_stream_accepts_async_callbacks() -> None:
    seen: list[str] = []

    async def on_event(event: StreamEvent) -> None:
        await asyncio.sleep(0)
        seen.append(event.type)

    handle = _handle(
        aiter_chunks([{"choices": [{"delta": {"content": "hello"}}]}])
    )
    state = await parse_stream(handle, on_event)

    assert seen == ["text"]
    assert state.text == "hello"
    assert handle.closed


@pytest.mark.asyncio
async def test_parse_stream_flushes_held_fragment_at_end() -> None:
    sink = EventSink()
    handle = _handle(
        aiter_chunks(
            [
                {"choices": [{"delta": {"content": "<think>a</th"}}]},
                {"choices": [{"delta": {"content": "ink>up to 5 <"}}]},
            ]
        )
    )
    state = await parse_stream(handle, sink)

    assert state.reasoning == "a"
    assert state.text == "up to 5 <"
    assert sink.text() == "up to 5 <"


@pytest.mark.asyncio
async def test_parse_stream_wraps_mid_stream_failures_and_closes() -> None:
    async def broken():
        yield {"choices": [{"delta": {"content": "par"}}]}
        raise ConnectionResetError("connection reset by peer")

    sink = EventSink()
    handle = _handle(broken())
    with pytest.raises(StreamError) as exc:
        await parse_stream(handle, sink)

    assert exc.value.kind is ErrorKind.STREAM_ERROR
    assert exc.value.backend == "openai"
    assert sink.text() == "par"
    assert handle.closed


@pytest.mark.asyncio
async def test_parse_stream_releases_handle_on_cancellation() -> None:
    release = asyncio.Event()

    async def slow():
        yield {"choices": [{"delta": {"content": "a"}}]}
        await release.wait()
        yield {"choices": [{"delta": {"content": "b"}}]}

    handle = _handle(slow())
    sink = EventSink()
    task = asyncio.create_task(parse_stream(handle, sink))
    while not sink.events:
        await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert handle.closed


def test_stream_event_to_dict_flattens_data() -> None:
    assert StreamEvent("text", "hi").to_dict() == {"type": "text", "content": "hi"}
    assert StreamEvent("dealIds", data={"dealIds": [1]}).to_dict() == {
        "type": "dealIds",
        "dealIds": [1],
    }
    assert StreamEvent("deals", data=[{"id": 1}]).to_dict() == {
        "type": "deals",
        "deals": [{"id": 1}],
    }
