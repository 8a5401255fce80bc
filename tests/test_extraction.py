"""Answer extraction ladder tests."""

from __future__ import annotations

import json

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from dealchat.config import ExtractionTuning
from dealchat.extraction import (
    clean_text,
    drop_lead_in,
    extract_answer,
    strip_reasoning,
    unwrap_fence,
)

pytestmark = pytest.mark.unit


def test_plain_json_answer() -> None:
    answer = extract_answer('{"message": "Found 3 deals", "dealIds": [4, 5, 6]}')

    assert answer.message == "Found 3 deals"
    assert answer.deal_ids == [4, 5, 6]
    assert answer.structured is True


def test_long_lead_in_and_fence_are_removed() -> None:
    prefix = "We are given a list of laptop deals and the user wants cheap ones, so: "
    prefix = prefix.ljust(80, ".")
    text = prefix + '```json\n{"message": "Found 2 deals", "dealIds": [1, 2]}\n```'

    answer = extract_answer(text)

    assert answer.message == "Found 2 deals"
    assert answer.deal_ids == [1, 2]


def test_short_prefix_is_kept_by_lead_in_rule() -> None:
    text = 'According to data: {"message": "x"}'

    assert drop_lead_in(text) == text


def test_lead_in_threshold_is_tunable() -> None:
    tuning = ExtractionTuning(prefix_threshold=5)
    text = 'According to data: {"message": "x"}'

    assert drop_lead_in(text, tuning) == '{"message": "x"}'


def test_reasoning_block_then_json() -> None:
    answer = extract_answer(
        '<think>The user wants TVs.</think>\n{"message": "Here are TVs", "dealIds": [9]}'
    )

    assert answer.message == "Here are TVs"
    assert answer.deal_ids == [9]


def test_trailing_json_after_prose_with_braces() -> None:
    text = 'Options {a} and {b} considered. {"message": "Pick A", "dealIds": []}'

    answer = extract_answer(text)

    assert answer.message == "Pick A"


def test_invalid_json_falls_back_to_regex_fields() -> None:
    text = '{"message": "Deals \\"now\\" live", "dealIds": [7, 8], oops}'

    answer = extract_answer(text)

    assert answer.message == 'Deals "now" live'
    assert answer.deal_ids == [7, 8]


def test_plain_text_is_returned_as_is() -> None:
    answer = extract_answer("  Sorry, I can only help with deals.  ")

    assert answer.message == "Sorry, I can only help with deals."
    assert answer.deal_ids == []
    assert answer.structured is False


def test_json_without_message_is_not_an_answer() -> None:
    answer = extract_answer('{"dealIds": [1]}')

    assert answer.structured is False
    assert answer.deal_ids == [1]


def test_unwrap_fence_without_language_tag() -> None:
    assert unwrap_fence('```\n{"message": "a"}\n```') == '{"message": "a"}'


@given(st.text(max_size=60))
@settings(max_examples=75, deadline=None, derandomize=True)
def test_strip_reasoning_is_idempotent(body: str) -> None:
    """Property: stripping twice equals stripping once."""
    for text in (body, f"<think>{body}</think>{body}", f"a<reasoning>{body}</reasoning>"):
        once = strip_reasoning(text)
        assert strip_reasoning(once) == once


_TAG_FREE = st.text(alphabet=st.characters(exclude_characters="<>"), max_size=40)
_ANSWERS = st.one_of(
    st.builds(
        lambda message, ids: json.dumps({"message": message, "dealIds": ids}),
        _TAG_FREE,
        st.lists(st.integers(min_value=0, max_value=999), max_size=4),
    ),
    _TAG_FREE,
)


@given(
    tags=st.sampled_from(ExtractionTuning().reasoning_tags),
    reasoning=_TAG_FREE,
    answer=_ANSWERS,
)
@settings(max_examples=100, deadline=None, derandomize=True)
def test_reasoning_block_does_not_change_extracted_answer(
    tags: tuple[str, str], reasoning: str, answer: str
) -> None:
    """Property: a tagged reply extracts exactly like its tag-free form."""
    open_tag, close_tag = tags
    tagged = f"<{open_tag}>{reasoning}</{close_tag}>{answer}"

    assert extract_answer(tagged) == extract_answer(answer)


@pytest.mark.parametrize("tags", ExtractionTuning().reasoning_tags)
def test_each_tag_pair_is_stripped_before_parsing(tags: tuple[str, str]) -> None:
    open_tag, close_tag = tags
    answer = '{"message": "Found 2 deals", "dealIds": [1, 2]}'
    tagged = f"<{open_tag}>the user wants {{cheap}} laptops</{close_tag}>\n{answer}"

    result = extract_answer(tagged)

    assert result == extract_answer(answer)
    assert result.message == "Found 2 deals"
    assert result.deal_ids == [1, 2]


@given(st.text(max_size=80))
@settings(max_examples=75, deadline=None, derandomize=True)
def test_extract_answer_never_raises(text: str) -> None:
    """Property: extraction is total over arbitrary text."""
    answer = extract_answer(text)
    assert isinstance(answer.message, str)
    assert isinstance(answer.deal_ids, list)


def test_clean_text_is_deterministic() -> None:
    text = "<thinking>a</thinking>```json\n{}\n```"
    assert clean_text(text) == clean_text(text) == "{}"
