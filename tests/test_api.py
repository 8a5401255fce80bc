"""Real API integration tests.

These tests make real OpenAI/Gemini calls and are intentionally compact:
- ENABLE_API_TESTS=1 is required to run any API tests
- OPENAI_API_KEY / GEMINI_API_KEY are required per backend fixture
"""

from __future__ import annotations

from typing import Any

import pytest

from dealchat import ChatRequest, ProviderConfig, build_orchestrator
from dealchat.backends.models import BackendResponse, ChatMessage, CompletionRequest
from dealchat.config import DEFAULT_MODELS, ModelSet

pytestmark = [pytest.mark.api, pytest.mark.slow]

_BACKENDS: list[tuple[str, str, str]] = [
    ("openai", "openai_api_key", "openai_test_model"),
    ("gemini", "gemini_api_key", "gemini_test_model"),
]


def _config(backend: Any, key: str, model: str) -> ProviderConfig:
    models = dict(DEFAULT_MODELS)
    models[backend] = ModelSet(model, model)
    return ProviderConfig(
        active_backend=backend, api_keys={backend: key}, backend_models=models
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(("backend", "key_fixture", "model_fixture"), _BACKENDS)
async def test_chat_returns_extracted_message(
    request: pytest.FixtureRequest, backend: str, key_fixture: str, model_fixture: str
) -> None:
    config = _config(
        backend,
        request.getfixturevalue(key_fixture),
        request.getfixturevalue(model_fixture),
    )
    orchestrator = build_orchestrator(config)
    try:
        result = await orchestrator.chat(ChatRequest("Say hello in five words."))
    finally:
        await orchestrator.aclose()

    assert result.success is True, result.error
    assert result.content
    assert result.usage.total_tokens > 0


@pytest.mark.asyncio
@pytest.mark.parametrize(("backend", "key_fixture", "model_fixture"), _BACKENDS)
async def test_health_check_pings_primary_backend(
    request: pytest.FixtureRequest, backend: str, key_fixture: str, model_fixture: str
) -> None:
    config = _config(
        backend,
        request.getfixturevalue(key_fixture),
        request.getfixturevalue(model_fixture),
    )
    orchestrator = build_orchestrator(config)
    try:
        report = await orchestrator.health_check()
        assert orchestrator.primary is not None
        raw = await orchestrator.primary.complete(
            CompletionRequest(
                model=config.models_for(backend).simple,
                messages=(ChatMessage("user", "Reply with OK."),),
                max_tokens=5,
            )
        )
    finally:
        await orchestrator.aclose()

    assert report["healthy"] is True, report
    assert isinstance(raw, BackendResponse)
