"""Anthropic Messages API backend."""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from typing import TYPE_CHECKING, Any

from dealchat.backends._errors import wrap_backend_error
from dealchat.backends._utils import ensure_async_iterable, parse_arguments, split_system
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


class AnthropicBackend:
    """Anthropic Messages API backend."""

    name = "anthropic"

    def __init__(
        self, api_key: str, *, config: ProviderConfig, client: Any = None
    ) -> None:
        """Initialize with an API key and build the SDK client once."""
        self.api_key = api_key
        self.config = config
        self._client: Any = client if client is not None else self._build_client()

    def _build_client(self) -> Any:
        try:
            from anthropic import AsyncAnthropic
        except ImportError as e:
            raise ConfigurationError(
                "anthropic package not installed",
                hint="pip install anthropic",
            ) from e
        return AsyncAnthropic(
            api_key=self.api_key,
            timeout=self.config.request_timeout_s,
            max_retries=0,
        )

    @staticmethod
    def build_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
        """Build the messages list.

        Anthropic requires strict user/assistant role alternation, so
        consecutive same-role messages are merged via ``_append_message``.
        """
        out: list[dict[str, Any]] = []
        for item in messages:
            if item.role == "tool":
                _append_message(
                    out,
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": item.tool_call_id or "",
                                "content": item.content or "",
                            }
                        ],
                    },
                )
            elif item.role == "assistant":
                blocks: list[dict[str, Any]] = []
                if item.content:
                    blocks.append({"type": "text", "text": item.content})
                for tc in item.tool_calls or ():
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": tc.id,
                            "name": tc.name,
                            "input": parse_arguments(tc.arguments),
                        }
                    )
                if blocks:
                    _append_message(out, {"role": "assistant", "content": blocks})
            elif item.content:
                _append_message(out, {"role": "user", "content": item.content})
        return out

    def build_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        """Translate a normalized request into ``messages.create`` kwargs."""
        system, rest = split_system(request.messages)
        messages = self.build_messages(rest)
        if not messages:
            raise BackendError(
                "Anthropic request has no user or assistant content",
                kind=ErrorKind.INVALID_REQUEST,
                backend=self.name,
                phase="generate",
            )
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
        }
        if system:
            kwargs["system"] = system
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools and self.config.supports_tools(request.model):
            kwargs["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in request.tools
            ]
        if request.stream:
            kwargs["stream"] = True
        return kwargs

    async def complete(
        self, request: CompletionRequest
    ) -> BackendResponse | StreamHandle:
        """Create a message, streaming or not."""
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
            response = await self._client.messages.create(**kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_backend_error(
                e,
                backend=self.name,
                phase="generate",
                message="Anthropic messages.create failed",
            ) from e

        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in getattr(response, "content", None) or []:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                text_parts.append(block.text)
            elif block_type == "thinking":
                reasoning_parts.append(getattr(block, "thinking", "") or "")
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.id,
                        name=block.name,
                        arguments=_dump_input(getattr(block, "input", None)),
                    )
                )

        stop_reason = getattr(response, "stop_reason", None)
        if stop_reason == "refusal":
            raise BackendError(
                "Anthropic refused the request",
                kind=ErrorKind.CONTENT_FILTER,
                backend=self.name,
                phase="generate",
            )

        usage_raw = getattr(response, "usage", None)
        usage = Usage(
            input_tokens=int(getattr(usage_raw, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage_raw, "output_tokens", 0) or 0),
        )
        return BackendResponse(
            content="".join(text_parts),
            tool_calls=tool_calls or None,
            finish_reason=stop_reason,
            usage=usage,
            cost=self.config.estimate_cost(
                request.model, usage.input_tokens, usage.output_tokens
            ),
            latency_ms=int((time.monotonic() - start) * 1000),
            model=request.model,
            backend=self.name,
            reasoning="\n\n".join(p for p in reasoning_parts if p) or None,
        )

    async def _open_stream(
        self, request: CompletionRequest, kwargs: dict[str, Any]
    ) -> StreamHandle:
        try:
            stream = await self._client.messages.create(**kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_backend_error(
                e,
                backend=self.name,
                phase="stream",
                message="Anthropic stream failed to open",
            ) from e
        ensure_async_iterable(stream, backend=self.name, model=request.model)
        close = getattr(stream, "close", None)
        return StreamHandle(
            backend=self.name,
            model=request.model,
            dialect="anthropic",
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


def _dump_input(value: Any) -> str:
    if value is None:
        return "{}"
    return json.dumps(value)


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match."""
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)
