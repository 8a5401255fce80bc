"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, marker registration,
and automatic API test skipping. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from dealchat.backends.models import (
    BackendResponse,
    CompletionRequest,
    StreamHandle,
    Usage,
)
from dealchat.cache import MemoryCache
from dealchat.classifier import Classification
from dealchat.config import ProviderConfig
from dealchat.tools import deal_tool_registry

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeBackend:
    """Backend test double that replays a script and captures requests.

    Script items may be a :class:`BackendResponse`, a :class:`StreamHandle`,
    a list of raw OpenAI-style chunks (wrapped in a handle), or an exception
    to raise. An empty script answers with a fixed JSON reply.
    """

    name: str = "openai"
    script: list[Any] = field(default_factory=list)
    requests: list[CompletionRequest] = field(default_factory=list)
    closed: bool = False

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def complete(
        self, request: CompletionRequest
    ) -> BackendResponse | StreamHandle:
        self.requests.append(request)
        item: Any = self.script.pop(0) if self.script else None
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, (BackendResponse, StreamHandle)):
            return item
        if isinstance(item, list):
            return StreamHandle(
                backend=self.name,
                model=request.model,
                dialect="openai",
                raw_stream=aiter_chunks(item),
            )
        text = item if isinstance(item, str) else '{"message": "ok", "dealIds": []}'
        if request.stream:
            return StreamHandle(
                backend=self.name,
                model=request.model,
                dialect="openai",
                raw_stream=aiter_chunks(text_chunks(text)),
            )
        return BackendResponse(
            content=text,
            finish_reason="stop",
            usage=Usage(input_tokens=10, output_tokens=5),
            cost=0.001,
            model=request.model,
            backend=self.name,
        )

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class FakeClassifier:
    """Classifier double returning a fixed classification and counting calls."""

    result: Classification = field(default_factory=Classification)
    calls: int = 0

    async def classify(self, text: str) -> Classification:
        del text
        self.calls += 1
        return self.result


async def aiter_chunks(chunks: list[Any]):
    for chunk in chunks:
        yield chunk


def text_chunks(text: str, *, usage: tuple[int, int] | None = (12, 6)) -> list[Any]:
    """OpenAI-style chunks streaming *text* in two pieces."""
    mid = len(text) // 2
    chunks: list[Any] = [
        {"choices": [{"index": 0, "delta": {"content": text[:mid]}}]},
        {"choices": [{"index": 0, "delta": {"content": text[mid:]}}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
    ]
    if usage is not None:
        chunks.append(
            {
                "choices": [],
                "usage": {"prompt_tokens": usage[0], "completion_tokens": usage[1]},
            }
        )
    return chunks


SAMPLE_DEALS: list[dict[str, Any]] = [
    {
        "id": 1,
        "title": "Gaming Laptop",
        "price": 699.0,
        "original_price": 999.0,
        "merchant": "Best Buy",
        "votes_up": 42,
    },
    {
        "id": 2,
        "title": "Ultrabook",
        "price": 749.0,
        "original_price": 899.0,
        "merchant": "Amazon",
        "votes_up": 17,
    },
]

SAMPLE_COUPONS: list[dict[str, Any]] = [
    {
        "title": "10% off sitewide",
        "coupon_code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": 10,
        "company": {"name": "Target"},
        "is_verified": True,
    }
]


@dataclass
class ToolCalls:
    """Records every handler invocation as (tool name, validated args)."""

    log: list[tuple[str, Any]] = field(default_factory=list)

    def names(self) -> list[str]:
        return [name for name, _ in self.log]


# =============================================================================
# Fixtures (opt-in)
# =============================================================================


@pytest.fixture
def config() -> ProviderConfig:
    """Config with OpenAI primary, Gemini secondary and fake keys."""
    return ProviderConfig(
        active_backend="openai",
        fallback_backend="gemini",
        api_keys={"openai": "sk-test", "gemini": "g-test"},
    )


@pytest.fixture
def cache(config: ProviderConfig) -> MemoryCache:
    return MemoryCache(config.cache_ttls, config.rate_limits)


@pytest.fixture
def tool_calls() -> ToolCalls:
    return ToolCalls()


@pytest.fixture
def tools(tool_calls: ToolCalls):
    """Registry with handlers backed by the sample deals and coupons."""

    async def search_deals(args: Any) -> dict[str, Any]:
        tool_calls.log.append(("search_deals", args))
        return {"deals": list(SAMPLE_DEALS)}

    async def get_coupons(args: Any) -> dict[str, Any]:
        tool_calls.log.append(("get_coupons", args))
        return {"coupons": list(SAMPLE_COUPONS)}

    async def get_trending_deals(args: Any) -> dict[str, Any]:
        tool_calls.log.append(("get_trending_deals", args))
        return {"deals": SAMPLE_DEALS[:1]}

    async def get_store_info(args: Any) -> dict[str, Any]:
        tool_calls.log.append(("get_store_info", args))
        return {"store": {"name": args.store, "active_deals": 3}}

    return deal_tool_registry(
        {
            "search_deals": search_deals,
            "get_coupons": get_coupons,
            "get_trending_deals": get_trending_deals,
            "get_store_info": get_store_info,
        }
    )


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_backend_env(request, monkeypatch):
    """Ensure a clean backend environment for each test.

    Clears API keys and AI_* switches to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("GEMINI_", "OPENAI_", "OPENROUTER_", "ANTHROPIC_", "AI_")):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("SITE_URL", raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

# Cheapest models per backend for live smoke tests.
_OPENAI_TEST_MODEL = "gpt-4o-mini"
_GEMINI_TEST_MODEL = "gemini-2.0-flash"


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def openai_test_model():
    """Return the model to use for OpenAI API tests."""
    return _OPENAI_TEST_MODEL


@pytest.fixture
def gemini_api_key():
    """Return GEMINI_API_KEY or skip the test if unavailable."""
    key = os.getenv("GEMINI_API_KEY")
    if not key:
        pytest.skip("GEMINI_API_KEY not set")
    return key


@pytest.fixture
def gemini_test_model():
    """Return the model to use for Gemini API tests."""
    return _GEMINI_TEST_MODEL
