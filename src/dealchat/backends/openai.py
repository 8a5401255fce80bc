"""OpenAI chat-completions backend and the OpenAI-compatible OpenRouter backend."""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import TYPE_CHECKING, Any

from dealchat.backends._errors import wrap_backend_error
from dealchat.backends._utils import ensure_async_iterable, estimate_tokens
from dealchat.backends.models import (
    BackendResponse,
    ChatMessage,
    CompletionRequest,
    StreamHandle,
    ToolCall,
    Usage,
)
from dealchat.errors import BackendError, ConfigurationError, ErrorKind
from dealchat.retry import retry_async

if TYPE_CHECKING:
    from dealchat.config import ProviderConfig


class OpenAIBackend:
    """OpenAI Chat Completions backend."""

    name = "openai"
    label = "OpenAI"

    def __init__(
        self, api_key: str, *, config: ProviderConfig, client: Any = None
    ) -> None:
        """Initialize with an API key and build the SDK client once."""
        self.api_key = api_key
        self.config = config
        self._client: Any = client if client is not None else self._build_client()

    def _client_kwargs(self) -> dict[str, Any]:
        # SDK-level retries are off; retry_async owns the attempt budget.
        return {
            "api_key": self.api_key,
            "timeout": self.config.request_timeout_s,
            "max_retries": 0,
        }

    def _build_client(self) -> Any:
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ConfigurationError(
                "openai package not installed",
                hint="pip install openai",
            ) from e
        return AsyncOpenAI(**self._client_kwargs())

    def build_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        """Translate a normalized request into ``chat.completions.create`` kwargs."""
        if not request.messages:
            raise BackendError(
                f"{self.label} request has no messages",
                kind=ErrorKind.INVALID_REQUEST,
                backend=self.name,
                phase="generate",
            )
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": [_to_openai_message(m) for m in request.messages],
            "max_tokens": request.max_tokens,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools and self.config.supports_tools(request.model):
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in request.tools
            ]
            kwargs["tool_choice"] = "auto"
        if request.stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def complete(
        self, request: CompletionRequest
    ) -> BackendResponse | StreamHandle:
        """Run a chat completion, streaming or not."""
        kwargs = self.build_kwargs(request)
        if request.stream:
            return await self._open_stream(request, kwargs)
        return await retry_async(
            lambda: self._complete_once(request, kwargs), policy=self.config.retry
        )

    async def _complete_once(
        self, request: CompletionRequest, kwargs: dict[str, Any]
    ) -> BackendResponse:
        start = time.monotonic()
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_backend_error(
                e,
                backend=self.name,
                phase="generate",
                message=f"{self.label} completion failed",
            ) from e
        return self._parse_response(response, request, start)

    def _parse_response(
        self, response: Any, request: CompletionRequest, start: float
    ) -> BackendResponse:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise BackendError(
                f"{self.label} returned no choices",
                backend=self.name,
                phase="generate",
            )
        choice = choices[0]
        message = choice.message
        content = getattr(message, "content", None) or ""
        finish_reason = getattr(choice, "finish_reason", None)

        tool_calls: list[ToolCall] = []
        for tc in getattr(message, "tool_calls", None) or []:
            fn = tc.function
            tool_calls.append(
                ToolCall(id=tc.id, name=fn.name, arguments=fn.arguments or "{}")
            )

        if finish_reason == "content_filter" and not content and not tool_calls:
            raise BackendError(
                f"{self.label} response blocked by content filter",
                kind=ErrorKind.CONTENT_FILTER,
                backend=self.name,
                phase="generate",
            )

        reasoning = getattr(message, "reasoning", None) or getattr(
            message, "reasoning_content", None
        )

        usage_raw = getattr(response, "usage", None)
        if usage_raw is not None:
            usage = Usage(
                input_tokens=int(getattr(usage_raw, "prompt_tokens", 0) or 0),
                output_tokens=int(getattr(usage_raw, "completion_tokens", 0) or 0),
            )
        else:
            prompt_text = " ".join(m.content or "" for m in request.messages)
            usage = Usage(
                input_tokens=estimate_tokens(prompt_text),
                output_tokens=estimate_tokens(content),
                estimated=True,
            )

        return BackendResponse(
            content=content,
            tool_calls=tool_calls or None,
            finish_reason=finish_reason,
            usage=usage,
            cost=self.config.estimate_cost(
                request.model, usage.input_tokens, usage.output_tokens
            ),
            latency_ms=int((time.monotonic() - start) * 1000),
            model=request.model,
            backend=self.name,
            reasoning=reasoning if isinstance(reasoning, str) and reasoning else None,
        )

    async def _open_stream(
        self, request: CompletionRequest, kwargs: dict[str, Any]
    ) -> StreamHandle:
        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_backend_error(
                e,
                backend=self.name,
                phase="stream",
                message=f"{self.label} stream failed to open",
            ) from e
        ensure_async_iterable(stream, backend=self.name, model=request.model)
        close = getattr(stream, "close", None)
        return StreamHandle(
            backend=self.name,
            model=request.model,
            dialect="openai",
            raw_stream=stream,
            _close=close if inspect.iscoroutinefunction(close) else None,
        )

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        close = getattr(client, "close", None)
        if inspect.iscoroutinefunction(close):
            await close()


class OpenRouterBackend(OpenAIBackend):
    """OpenRouter: the OpenAI wire protocol behind a different base URL."""

    name = "openrouter"
    label = "OpenRouter"

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "api_key": self.api_key,
            "base_url": self.config.openrouter_base_url,
            "timeout": self.config.openrouter_timeout_s,
            "max_retries": 0,
            "default_headers": {
                "HTTP-Referer": self.config.site_url,
                "X-Title": self.config.site_name,
            },
        }


def _to_openai_message(message: ChatMessage) -> dict[str, Any]:
    """Convert a normalized message to the chat-completions wire shape."""
    if message.role == "tool":
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id or "",
            "content": message.content or "",
        }
    if message.role == "assistant" and message.tool_calls:
        return {
            "role": "assistant",
            "content": message.content or None,
            "tool_calls": [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments},
                }
                for tc in message.tool_calls
            ],
        }
    return {"role": message.role, "content": message.content or ""}
