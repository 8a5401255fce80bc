"""Pull the ``{message, dealIds}`` answer out of free-form model text.

Reasoning models often narrate before answering, wrap JSON in code fences,
or emit JSON that is not quite valid. :func:`extract_answer` walks a fixed
ladder of increasingly loose heuristics and never raises: if nothing
structured is found the cleaned text itself is the answer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any

from dealchat.config import ExtractionTuning

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_TAIL_OBJECT_RE = re.compile(r'\{[^{}]*"message"[^{}]*\}\s*$')
_MESSAGE_FIELD_RES = (
    re.compile(r'"message"\s*:\s*"((?:[^"\\]|\\.)*)"'),
    re.compile(r"""message["\s]*:\s*["']([^"']+)["']"""),
)
_DEAL_IDS_RE = re.compile(r'"dealIds"\s*:\s*\[([^\]]*)\]')

_DEFAULT_TUNING = ExtractionTuning()


@dataclass(frozen=True)
class ExtractedAnswer:
    """Result of running the extraction ladder."""

    message: str
    deal_ids: list[Any] = field(default_factory=list)
    #: True when the message came from a JSON object or a ``message`` field.
    structured: bool = False


def strip_reasoning(text: str, tuning: ExtractionTuning = _DEFAULT_TUNING) -> str:
    """Remove every known reasoning block; text without tags is unchanged."""
    patterns = [
        re.compile(
            rf"<{re.escape(open_tag)}>[\s\S]*?</{re.escape(close_tag)}>", re.IGNORECASE
        )
        for open_tag, close_tag in tuning.reasoning_tags
    ]
    previous = None
    # Removing one block can expose another (nested or interleaved tags).
    while text != previous:
        previous = text
        for pattern in patterns:
            text = pattern.sub("", text)
    return text.strip()


def drop_lead_in(text: str, tuning: ExtractionTuning = _DEFAULT_TUNING) -> str:
    """Drop narration before the first ``{`` when it reads like meta-commentary."""
    first_brace = text.find("{")
    if first_brace <= tuning.prefix_threshold:
        return text
    prefix = text[:first_brace].lower()
    if any(phrase in prefix for phrase in tuning.lead_in_phrases):
        return text[first_brace:]
    return text


def unwrap_fence(text: str) -> str:
    """Return the body of the first fenced code block, if any."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text


def clean_text(text: str, tuning: ExtractionTuning = _DEFAULT_TUNING) -> str:
    """Apply the non-parsing rungs: reasoning strip, lead-in drop, fence unwrap."""
    return unwrap_fence(drop_lead_in(strip_reasoning(text, tuning), tuning))


def _answer_from_object(obj: Any) -> ExtractedAnswer | None:
    if not isinstance(obj, dict):
        return None
    message = obj.get("message")
    if not isinstance(message, str) or not message:
        return None
    deal_ids = obj.get("dealIds")
    return ExtractedAnswer(
        message=message,
        deal_ids=list(deal_ids) if isinstance(deal_ids, list) else [],
        structured=True,
    )


def _parse_braced(text: str) -> ExtractedAnswer | None:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    try:
        return _answer_from_object(json.loads(text[first : last + 1]))
    except ValueError:
        return None


def _parse_tail(text: str) -> ExtractedAnswer | None:
    match = _TAIL_OBJECT_RE.search(text)
    if not match:
        return None
    try:
        return _answer_from_object(json.loads(match.group(0)))
    except ValueError:
        return None


def _regex_message(text: str) -> str | None:
    for pattern in _MESSAGE_FIELD_RES:
        match = pattern.search(text)
        if not match or not match.group(1):
            continue
        raw = match.group(1)
        try:
            decoded = json.loads(f'"{raw}"')
        except ValueError:
            decoded = raw
        return decoded.strip() if isinstance(decoded, str) else raw.strip()
    return None


def _regex_deal_ids(text: str) -> list[Any]:
    match = _DEAL_IDS_RE.search(text)
    if not match:
        return []
    try:
        parsed = json.loads(f"[{match.group(1)}]")
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


def extract_answer(
    text: str, tuning: ExtractionTuning = _DEFAULT_TUNING
) -> ExtractedAnswer:
    """Extract the user-visible answer and deal ids from raw model text.

    Deterministic and side-effect free. Each rung runs only if the previous
    one produced nothing usable.
    """
    cleaned = clean_text(text, tuning)

    answer = _parse_braced(cleaned) or _parse_tail(cleaned)
    if answer is not None:
        return answer

    message = _regex_message(cleaned)
    deal_ids = _regex_deal_ids(cleaned)
    if message is not None:
        return ExtractedAnswer(message=message, deal_ids=deal_ids, structured=True)

    if cleaned and "{" in cleaned:
        logger.debug("No JSON answer found; using cleaned text (len=%d)", len(cleaned))
    return ExtractedAnswer(message=cleaned, deal_ids=deal_ids)
