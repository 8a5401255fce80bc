"""Mock backend for offline use and tests."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from dealchat.backends._utils import estimate_tokens
from dealchat.backends.models import (
    BackendResponse,
    CompletionRequest,
    StreamHandle,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from dealchat.config import ProviderConfig


class MockBackend:
    """Mock backend for running without API calls.

    Echoes the last user message inside the JSON answer shape the prompts ask
    for; streams it as OpenAI-style chunks in a few pieces.
    """

    name = "mock"

    def __init__(self, *, config: ProviderConfig | None = None) -> None:
        self.config = config

    @staticmethod
    def _answer(request: CompletionRequest) -> str:
        last_user = next(
            (m.content for m in reversed(request.messages) if m.role == "user"), ""
        )
        return json.dumps({"message": f"echo: {(last_user or '')[:100]}", "dealIds": []})

    async def complete(
        self, request: CompletionRequest
    ) -> BackendResponse | StreamHandle:
        """Return a deterministic mock response."""
        text = self._answer(request)
        if request.stream:
            return StreamHandle(
                backend=self.name,
                model=request.model,
                dialect="openai",
                raw_stream=_chunks(text),
            )
        usage = Usage(input_tokens=10, output_tokens=estimate_tokens(text))
        return BackendResponse(
            content=text,
            finish_reason="stop",
            usage=usage,
            model=request.model,
            backend=self.name,
        )

    async def aclose(self) -> None:
        """Nothing to release."""


async def _chunks(text: str, *, pieces: int = 3) -> AsyncIterator[dict[str, Any]]:
    size = max(1, len(text) // pieces)
    for i in range(0, len(text), size):
        yield {"choices": [{"index": 0, "delta": {"content": text[i : i + size]}}]}
    yield {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}
    yield {
        "choices": [],
        "usage": {"prompt_tokens": 10, "completion_tokens": estimate_tokens(text)},
    }
