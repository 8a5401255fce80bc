"""Gemini backend implementation (google-genai)."""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any
import uuid

from dealchat.backends._errors import wrap_backend_error
from dealchat.backends._utils import (
    ensure_async_iterable,
    estimate_tokens,
    parse_arguments,
    split_system,
)
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

_BLOCKED_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"})


class GeminiBackend:
    """Google Gemini API backend."""

    name = "gemini"

    def __init__(
        self, api_key: str, *, config: ProviderConfig, client: Any = None
    ) -> None:
        """Create backend with an API key; the SDK client is built once here."""
        self.api_key = api_key
        self.config = config
        self._client: Any = client if client is not None else self._build_client()

    def _build_client(self) -> Any:
        try:
            from google import genai
        except ImportError as e:
            raise ConfigurationError(
                "google-genai package not installed",
                hint="pip install google-genai",
            ) from e
        return genai.Client(
            api_key=self.api_key,
            http_options={"timeout": int(self.config.request_timeout_s * 1000)},
        )

    def build_contents(self, messages: list[ChatMessage]) -> list[Any]:
        """Translate turns to Gemini ``Content`` objects.

        ``assistant`` becomes ``model``; tool results become function responses
        on a ``user`` turn. Consecutive same-role turns are merged because
        Gemini rejects repeated roles after a function response.
        """
        from google.genai import types

        call_id_to_name: dict[str, str] = {}
        contents: list[Any] = []

        def append(role: str, parts: list[Any]) -> None:
            if not parts:
                return
            if contents and contents[-1].role == role:
                contents[-1].parts.extend(parts)
            else:
                contents.append(types.Content(role=role, parts=parts))

        for message in messages:
            if message.role == "assistant":
                parts: list[Any] = []
                if message.content:
                    parts.append(types.Part.from_text(text=message.content))
                for tc in message.tool_calls or ():
                    call_id_to_name[tc.id] = tc.name
                    parts.append(
                        types.Part.from_function_call(
                            name=tc.name, args=parse_arguments(tc.arguments)
                        )
                    )
                append("model", parts)
            elif message.role == "tool":
                name = message.name or call_id_to_name.get(
                    message.tool_call_id or "", "unknown_tool"
                )
                payload: Any
                try:
                    payload = json.loads(message.content or "")
                except ValueError:
                    payload = None
                if not isinstance(payload, dict):
                    payload = {"result": message.content or ""}
                append(
                    "user",
                    [types.Part.from_function_response(name=name, response=payload)],
                )
            elif message.content:
                append("user", [types.Part.from_text(text=message.content)])
        return contents

    def build_config(self, request: CompletionRequest, system: str | None) -> Any:
        """Build ``GenerateContentConfig`` including out-of-band system text."""
        from google.genai import types

        config_kwargs: dict[str, Any] = {"max_output_tokens": request.max_tokens}
        if system:
            config_kwargs["system_instruction"] = system
        if request.temperature is not None:
            config_kwargs["temperature"] = request.temperature
        if request.tools and self.config.supports_tools(request.model):
            config_kwargs["tools"] = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=t.name,
                            description=t.description,
                            parameters_json_schema=t.parameters,
                        )
                        for t in request.tools
                    ]
                )
            ]
        return types.GenerateContentConfig(**config_kwargs)

    def _prepare(self, request: CompletionRequest) -> tuple[list[Any], Any]:
        system, rest = split_system(request.messages)
        contents = self.build_contents(rest)
        if not contents:
            raise BackendError(
                "Gemini request has no user or model content",
                kind=ErrorKind.INVALID_REQUEST,
                backend=self.name,
                phase="generate",
                hint="At least one non-system message with text is required.",
            )
        return contents, self.build_config(request, system)

    async def complete(
        self, request: CompletionRequest
    ) -> BackendResponse | StreamHandle:
        """Generate content from the Gemini model."""
        contents, config = self._prepare(request)
        if request.stream:
            return await self._open_stream(request, contents, config)
        return await retry_async(
            lambda: self._complete_once(request, contents, config),
            policy=self.config.retry,
        )

    async def _complete_once(
        self, request: CompletionRequest, contents: list[Any], config: Any
    ) -> BackendResponse:
        start = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=request.model, contents=contents, config=config
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_backend_error(
                e,
                backend=self.name,
                phase="generate",
                message="Gemini generate failed",
            ) from e
        if not response:
            raise BackendError(
                "Gemini returned an empty response.", backend=self.name, phase="generate"
            )
        return self._parse_response(response, request, start)

    def _parse_response(
        self, response: Any, request: CompletionRequest, start: float
    ) -> BackendResponse:
        candidates = getattr(response, "candidates", None) or []
        candidate = candidates[0] if candidates else None
        finish_reason = _finish_reason_name(getattr(candidate, "finish_reason", None))
        block_reason = getattr(
            getattr(response, "prompt_feedback", None), "block_reason", None
        )
        if finish_reason in _BLOCKED_FINISH_REASONS or block_reason:
            raise BackendError(
                "Response blocked by safety filters: SAFETY",
                kind=ErrorKind.CONTENT_FILTER,
                backend=self.name,
                phase="generate",
            )

        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            fc = getattr(part, "function_call", None)
            if fc is not None:
                tool_calls.append(
                    ToolCall(
                        id=str(getattr(fc, "id", None) or f"call_{uuid.uuid4().hex[:8]}"),
                        name=str(fc.name),
                        arguments=json.dumps(fc.args or {}),
                    )
                )
                continue
            text = getattr(part, "text", None)
            if not text:
                continue
            if getattr(part, "thought", False):
                reasoning_parts.append(text)
            else:
                text_parts.append(text)
        text = "".join(text_parts)

        usage = _usage_from_metadata(getattr(response, "usage_metadata", None))
        if usage is None:
            prompt_text = " ".join(m.content or "" for m in request.messages)
            usage = Usage(
                input_tokens=estimate_tokens(prompt_text),
                output_tokens=estimate_tokens(text),
                estimated=True,
            )

        return BackendResponse(
            content=text,
            tool_calls=tool_calls or None,
            finish_reason=finish_reason.lower() if finish_reason else None,
            usage=usage,
            cost=self.config.estimate_cost(
                request.model, usage.input_tokens, usage.output_tokens
            ),
            latency_ms=int((time.monotonic() - start) * 1000),
            model=request.model,
            backend=self.name,
            reasoning="\n\n".join(reasoning_parts) if reasoning_parts else None,
        )

    async def _open_stream(
        self, request: CompletionRequest, contents: list[Any], config: Any
    ) -> StreamHandle:
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=request.model, contents=contents, config=config
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_backend_error(
                e,
                backend=self.name,
                phase="stream",
                message="Gemini stream failed to open",
            ) from e
        ensure_async_iterable(stream, backend=self.name, model=request.model)
        return StreamHandle(
            backend=self.name, model=request.model, dialect="gemini", raw_stream=stream
        )

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        aio = getattr(client, "aio", None)
        close = getattr(aio, "aclose", None)
        if callable(close):
            await close()


def _finish_reason_name(value: Any) -> str | None:
    if value is None:
        return None
    name = getattr(value, "name", None)
    return name if isinstance(name, str) else str(value)


def _usage_from_metadata(um: Any) -> Usage | None:
    """Map ``usage_metadata`` to :class:`Usage`; None when absent."""
    if um is None:
        return None
    prompt = getattr(um, "prompt_token_count", None)
    candidates = getattr(um, "candidates_token_count", None)
    if prompt is None and candidates is None:
        return None
    return Usage(input_tokens=int(prompt or 0), output_tokens=int(candidates or 0))
