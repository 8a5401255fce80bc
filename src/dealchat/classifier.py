"""Intent classification contract and model-tier selection."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from dealchat.prompts import match_faq

if TYPE_CHECKING:
    from dealchat.config import ModelSet


class Intent:
    """Intent labels the classifier may return."""

    SEARCH = "search"
    COUPON = "coupon"
    COMPARE = "compare"
    ADVICE = "advice"
    TRENDING = "trending"
    STORE_INFO = "store_info"
    HELP = "help"
    GENERAL = "general"


#: Intents that need external data before the model can answer.
DATA_INTENTS = frozenset({Intent.SEARCH, Intent.COUPON, Intent.TRENDING, Intent.COMPARE})

Complexity = Literal["simple", "complex"]


@dataclass(frozen=True)
class Classification:
    """Classifier output."""

    intent: str = Intent.GENERAL
    complexity: Complexity = "simple"
    entities: dict[str, Any] = field(default_factory=dict)
    #: Canned answer that bypasses the model entirely.
    faq_response: str | None = None


@runtime_checkable
class Classifier(Protocol):
    """Maps raw text to an intent, a complexity tier and entities."""

    async def classify(self, text: str) -> Classification:
        """Classify *text*."""
        ...


def select_model(classification: Classification, models: ModelSet) -> str:
    """Pick the model tier for a classification."""
    return models.complex if classification.complexity == "complex" else models.simple


_PRICE_RE = re.compile(r"(?:under|below|less than|<)\s*\$?\s*(\d+(?:\.\d+)?)", re.I)
_STORE_RE = re.compile(r"(?:for|at|from)\s+([A-Z][\w&' -]{1,30}?)(?:\s|$|\?|\.)")

_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    (Intent.COUPON, re.compile(r"\b(coupons?|promo|codes?|voucher)\b", re.I)),
    (Intent.COMPARE, re.compile(r"\b(compare|vs\.?|versus|which is better)\b", re.I)),
    (Intent.ADVICE, re.compile(r"\b(should i|worth it|good time|wait for)\b", re.I)),
    (Intent.TRENDING, re.compile(r"\b(trending|popular|hot deals?|hottest)\b", re.I)),
    (Intent.STORE_INFO, re.compile(r"\b(tell me about|is \w+ reliable|store info)\b", re.I)),
    (Intent.HELP, re.compile(r"\b(how do i|how does|help)\b", re.I)),
    (Intent.SEARCH, re.compile(r"\b(deals?|find|cheap|buy|show me|discount|sale)\b", re.I)),
)

_COMPLEX_INTENTS = frozenset({Intent.COMPARE, Intent.ADVICE})


class RuleClassifier:
    """Keyword classifier used when the host supplies none.

    Checks canned FAQ answers first, then a fixed keyword table. Entities are
    limited to ``query``, ``max_price`` and ``store``.
    """

    async def classify(self, text: str) -> Classification:
        faq = match_faq(text)
        if faq is not None:
            return Classification(intent=Intent.HELP, faq_response=faq)

        intent = next(
            (name for name, pattern in _RULES if pattern.search(text)), Intent.GENERAL
        )
        entities: dict[str, Any] = {"query": text.strip()}
        price = _PRICE_RE.search(text)
        if price:
            entities["max_price"] = float(price.group(1))
        store = _STORE_RE.search(text)
        if store:
            entities["store"] = store.group(1).strip()
        return Classification(
            intent=intent,
            complexity="complex" if intent in _COMPLEX_INTENTS else "simple",
            entities=entities,
        )
