"""Chat orchestration: one request from validation to a cached, cost-tracked answer.

Request flow::

    validate -> rate-limit check -> exact cache -> classify -> (FAQ | tool preflight)
      -> primary completion (one-shot fallback) -> tool loop (at most once)
      -> assemble -> cache + count

``chat`` and ``chat_stream`` share every step; the streaming variant relays
events as they arrive and replays cache/FAQ answers through the same channel.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
import copy
from dataclasses import dataclass, field, replace
import logging
import time
from typing import TYPE_CHECKING, Any
import uuid

from dealchat.backends._utils import estimate_tokens
from dealchat.backends.models import (
    BackendResponse,
    ChatMessage,
    CompletionRequest,
    StreamHandle,
    Usage,
)
from dealchat.classifier import DATA_INTENTS, Classification, Intent, select_model
from dealchat.errors import BackendError, DealChatError, ErrorKind, ToolError
from dealchat.extraction import extract_answer
from dealchat.prompts import (
    ERROR_RESPONSES,
    STRICT_JSON_REMINDER,
    coupons_found_block,
    deals_found_block,
    format_tool_result,
    system_prompt,
)
from dealchat.streaming import StreamEvent, emit, parse_stream

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from dealchat.backends.base import Backend
    from dealchat.backends.models import ToolCall
    from dealchat.cache import ResponseCache
    from dealchat.classifier import Classifier
    from dealchat.config import ProviderConfig
    from dealchat.streaming import ParserState
    from dealchat.tools import ToolExecutor

    EventCallback = Callable[[StreamEvent], Awaitable[None] | None]

logger = logging.getLogger(__name__)

_NO_RESULTS_CONTEXT = "\n\nI searched but found no specific results matching the criteria."
_STREAM_FAILED_COPY = "Something went wrong. Please try again."


@dataclass(frozen=True)
class ChatRequest:
    """One inbound chat message."""

    message: str
    user_id: str | None = None
    client_ip: str | None = None
    history: Sequence[ChatMessage | Mapping[str, Any]] = ()
    context: Mapping[str, Any] = field(default_factory=dict)

    @property
    def identity_key(self) -> str:
        """Rate-limit principal: ``u:<id>`` when signed in, else ``ip:<addr>``."""
        if self.user_id:
            return f"u:{self.user_id}"
        ip = self.client_ip or self.context.get("ip") or "unknown"
        return f"ip:{ip}"


@dataclass(frozen=True)
class ChatResult:
    """Terminal output of ``chat`` and ``chat_stream``."""

    success: bool
    content: str = ""
    request_id: str = ""
    latency_ms: int = 0
    cached: bool = False
    usage: Usage = field(default_factory=Usage)
    cost: float = 0.0
    deal_ids: list[Any] = field(default_factory=list)
    intent: str | None = None
    model: str | None = None
    backend: str | None = None
    error: str | None = None
    status_code: int | None = None
    error_kind: ErrorKind | None = None
    retryable: bool | None = None
    retry_after: float | None = None
    deals: list[dict[str, Any]] | None = None
    coupons: list[dict[str, Any]] | None = None
    store: dict[str, Any] | None = None
    #: True when the answer is the apology plus best-effort search results.
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        """JSON shape for the HTTP layer."""
        out: dict[str, Any] = {
            "success": self.success,
            "content": self.content,
            "requestId": self.request_id,
            "latencyMs": self.latency_ms,
            "cached": self.cached,
            "usage": self.usage.to_dict(),
            "cost": self.cost,
        }
        optional = {
            "dealIds": self.deal_ids or None,
            "intent": self.intent,
            "model": self.model,
            "backend": self.backend,
            "error": self.error,
            "statusCode": self.status_code,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "retryable": self.retryable,
            "retryAfter": self.retry_after,
            "deals": self.deals,
            "coupons": self.coupons,
            "store": self.store,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        if self.degraded:
            out["fallback"] = True
        return out


@dataclass
class _Preflight:
    """Data fetched by a manual tool run."""

    context: str = ""
    payloads: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class _Draft:
    """Everything collected before a ChatResult is assembled."""

    text: str = ""
    usage: Usage = field(default_factory=Usage)
    cost: float = 0.0
    model: str | None = None
    backend: str | None = None
    payloads: list[dict[str, Any]] = field(default_factory=list)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _preview(text: str) -> str:
    return text[:50]


class ChatOrchestrator:
    """Coordinates backends, cache, rate limiter, classifier and tools.

    All collaborators are injected; the orchestrator holds no per-request
    state between calls.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        primary: Backend | None,
        cache: ResponseCache,
        classifier: Classifier,
        tools: ToolExecutor | None = None,
        secondary: Backend | None = None,
    ) -> None:
        self.config = config
        self.primary = primary
        self.secondary = secondary
        self.cache = cache
        self.classifier = classifier
        self.tools = tools

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def chat(self, request: ChatRequest) -> ChatResult:
        """Answer one message without streaming."""
        start = time.monotonic()
        request_id = str(uuid.uuid4())

        rejected = self._validate(request, request_id, start)
        if rejected is not None:
            return rejected
        text = request.message.strip()
        identity = request.identity_key

        limited = await self._check_rate_limit(identity, request_id, start)
        if limited is not None:
            return limited

        cached = await self._cache_get(text)
        if cached is not None:
            logger.info("Cache hit for query: %r", _preview(text))
            return replace(
                cached, cached=True, request_id=request_id, latency_ms=_elapsed_ms(start)
            )

        classification: Classification | None = None
        try:
            classification = await self.classifier.classify(text)
            logger.info(
                "Classified: %s (%s)", classification.intent, classification.complexity
            )
            if classification.faq_response:
                result = self._faq_result(classification, request_id, start)
                await self._cache_set(text, result)
                return result

            draft = await self._answer(text, request, classification)
        except Exception as exc:
            return await self._degrade(exc, text, classification, request_id, start)

        result = self._assemble(draft, classification, request_id, start)
        await self._cache_set(text, result)
        await self._count(identity)
        return result

    async def chat_stream(
        self, request: ChatRequest, on_event: EventCallback
    ) -> ChatResult:
        """Answer one message, relaying :class:`StreamEvent` values to *on_event*.

        Returns the same :class:`ChatResult` ``chat`` would. If the caller is
        cancelled mid-stream the backend stream is released and nothing is
        cached or counted.
        """
        start = time.monotonic()
        request_id = str(uuid.uuid4())

        rejected = self._validate(request, request_id, start)
        if rejected is None:
            rejected = await self._check_rate_limit(
                request.identity_key, request_id, start
            )
        if rejected is not None:
            await emit(on_event, StreamEvent("error", data={"error": rejected.error}))
            return rejected

        if not self.config.features.streaming:
            result = await self.chat(request)
            await self._replay(result, on_event, request_id=result.request_id)
            return result

        text = request.message.strip()
        identity = request.identity_key
        await emit(on_event, StreamEvent("start", data={"requestId": request_id}))

        cached = await self._cache_get(text)
        if cached is not None:
            logger.info("Cache hit for query: %r", _preview(text))
            result = replace(
                cached, cached=True, request_id=request_id, latency_ms=_elapsed_ms(start)
            )
            await self._replay(result, on_event, request_id=None)
            return result

        classification: Classification | None = None
        try:
            classification = await self.classifier.classify(text)
            logger.info(
                "Classified: %s (%s)", classification.intent, classification.complexity
            )
            if classification.faq_response:
                result = self._faq_result(classification, request_id, start)
                await self._cache_set(text, result)
                await self._replay(result, on_event, request_id=None)
                return result

            draft = await self._answer_stream(text, request, classification, on_event)
        except Exception as exc:
            await emit(
                on_event, StreamEvent("error", data={"error": _STREAM_FAILED_COPY})
            )
            result = await self._degrade(exc, text, classification, request_id, start)
            if result.deals:
                await emit(on_event, StreamEvent("deals", data={"deals": result.deals}))
            await emit(
                on_event, StreamEvent("done", data={"cached": False, "fallback": True})
            )
            return result

        result = self._assemble(draft, classification, request_id, start)
        if result.deal_ids:
            await emit(on_event, StreamEvent("dealIds", data={"dealIds": result.deal_ids}))
        await emit(
            on_event,
            StreamEvent(
                "done",
                data={
                    "cached": False,
                    "message": result.content,
                    "usage": result.usage.to_dict(),
                    "cost": result.cost,
                },
            ),
        )
        await self._cache_set(text, result)
        await self._count(identity)
        return result

    async def health_check(self) -> dict[str, Any]:
        """Probe the active backend with a tiny completion."""
        if not self.config.features.enabled:
            return {"healthy": False, "backend": None, "reason": "AI disabled"}
        if self.primary is None:
            return {"healthy": False, "backend": None, "reason": "No backend configured"}

        name = self.primary.name
        ping = CompletionRequest(
            model=self.config.models_for(name).simple,
            messages=(ChatMessage("user", "ping"),),
            max_tokens=5,
        )
        report: dict[str, Any] = {"backend": name}
        stats = getattr(self.cache, "stats", None)
        if callable(stats):
            report["cache"] = stats()
        try:
            await self.primary.complete(ping)
        except BackendError as e:
            logger.warning("Health check failed for %s: %s", name, e)
            return {**report, "healthy": False, "reason": str(e)}
        return {**report, "healthy": True, "reason": "OK"}

    async def aclose(self) -> None:
        """Close backend clients."""
        for backend in (self.primary, self.secondary):
            if backend is not None:
                await backend.aclose()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _failure(
        self,
        message: str,
        kind: ErrorKind,
        request_id: str,
        start: float,
        *,
        retryable: bool | None = None,
        retry_after: float | None = None,
    ) -> ChatResult:
        return ChatResult(
            success=False,
            error=message,
            request_id=request_id,
            latency_ms=_elapsed_ms(start),
            status_code=kind.status_code,
            error_kind=kind,
            retryable=kind.retryable if retryable is None else retryable,
            retry_after=retry_after,
        )

    def _validate(
        self, request: ChatRequest, request_id: str, start: float
    ) -> ChatResult | None:
        if not self.config.features.enabled or self.primary is None:
            return self._failure(
                ERROR_RESPONSES["unavailable"], ErrorKind.CONFIG_ERROR, request_id, start
            )
        message = request.message
        if not isinstance(message, str) or not message.strip():
            return self._failure(
                ERROR_RESPONSES["invalid_input"],
                ErrorKind.INVALID_REQUEST,
                request_id,
                start,
            )
        if len(message.strip()) > self.config.limits.max_input_length:
            return self._failure(
                ERROR_RESPONSES["too_long"], ErrorKind.INVALID_REQUEST, request_id, start
            )
        return None

    async def _check_rate_limit(
        self, identity: str, request_id: str, start: float
    ) -> ChatResult | None:
        status = await self.cache.check_rate_limit(identity)
        if not status.limited:
            return None
        logger.info("Rate limited: %s", identity)
        return self._failure(
            status.message or ERROR_RESPONSES["rate_limited"],
            ErrorKind.RATE_LIMIT,
            request_id,
            start,
            retryable=True,
            retry_after=status.retry_after,
        )

    async def _cache_get(self, text: str) -> ChatResult | None:
        if not self.config.features.caching:
            return None
        value = await self.cache.get(text, "exact")
        # Callers own what they receive; the stored entry stays untouched.
        return copy.deepcopy(value) if isinstance(value, ChatResult) else None

    async def _cache_set(self, text: str, result: ChatResult) -> None:
        if self.config.features.caching:
            await self.cache.set(text, copy.deepcopy(result), "exact")

    async def _count(self, identity: str) -> None:
        await self.cache.increment_query_count(identity, "day")
        await self.cache.increment_query_count(identity, "minute")

    def _faq_result(
        self, classification: Classification, request_id: str, start: float
    ) -> ChatResult:
        return ChatResult(
            success=True,
            content=classification.faq_response or "",
            intent=classification.intent,
            request_id=request_id,
            latency_ms=_elapsed_ms(start),
        )

    # ------------------------------------------------------------------
    # Context building
    # ------------------------------------------------------------------

    def _history(
        self, history: Sequence[ChatMessage | Mapping[str, Any]]
    ) -> list[ChatMessage]:
        turns: list[ChatMessage] = []
        for item in history:
            if isinstance(item, ChatMessage):
                role, content = item.role, item.content
            elif isinstance(item, Mapping):
                role, content = item.get("role"), item.get("content")
            else:
                continue
            if role not in ("user", "assistant"):
                continue
            if not isinstance(content, str) or not content.strip():
                continue
            turns.append(ChatMessage(role, content))
        limit = self.config.limits.max_history
        return turns[-limit:] if limit > 0 else []

    def _build_messages(
        self,
        text: str,
        request: ChatRequest,
        classification: Classification,
        injected: str = "",
    ) -> list[ChatMessage]:
        system = system_prompt(classification.intent) + STRICT_JSON_REMINDER
        return [
            ChatMessage("system", system),
            *self._history(request.history),
            ChatMessage("user", text + injected),
        ]

    def _uses_native_tools(self, model: str) -> bool:
        return self.tools is not None and self.config.supports_tools(model)

    async def _preflight(self, text: str, classification: Classification) -> _Preflight:
        """Run the single most relevant tool for models without native tool use."""
        if self.tools is None:
            return _Preflight()
        entities = classification.entities
        intent = classification.intent
        if intent in (Intent.SEARCH, Intent.COMPARE):
            name = "search_deals"
            args: dict[str, Any] = {"query": entities.get("query") or text}
            if entities.get("max_price") is not None:
                args["max_price"] = entities["max_price"]
        elif intent == Intent.COUPON:
            name = "get_coupons"
            args = {"store": entities.get("store") or entities.get("query") or text}
        elif intent == Intent.TRENDING:
            name, args = "get_trending_deals", {"limit": 5}
        else:
            return _Preflight()

        logger.info("Manual tool execution for intent: %s", intent)
        try:
            payload = await self.tools.execute(name, args)
        except ToolError as e:
            logger.warning("Manual tool execution failed: %s", e)
            return _Preflight()
        except Exception:  # noqa: BLE001
            logger.exception("Tool executor raised during manual %s", name)
            return _Preflight()
        if not payload.get("success", True):
            return _Preflight()

        if payload.get("deals"):
            context = deals_found_block(payload["deals"])
        elif payload.get("coupons"):
            context = coupons_found_block(payload["coupons"])
        else:
            context = _NO_RESULTS_CONTEXT
        return _Preflight(context=context, payloads=[payload])

    async def _execute_tool_calls(self, calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
        """Execute each call; failures become error payloads and are logged."""
        assert self.tools is not None
        tools = self.tools

        async def run(call: ToolCall) -> dict[str, Any]:
            try:
                return await tools.execute(call.name, call.arguments)
            except ToolError as e:
                logger.warning("Tool %s failed: %s", call.name, e)
                return {"success": False, "error": str(e)}
            except Exception as e:  # noqa: BLE001
                logger.exception("Tool executor raised for %s", call.name)
                return {"success": False, "error": str(e) or type(e).__name__}

        logger.info("Executing %d tool(s)", len(calls))
        return list(await asyncio.gather(*(run(c) for c in calls)))

    @staticmethod
    def _tool_turns(
        calls: Sequence[ToolCall], payloads: Sequence[dict[str, Any]]
    ) -> list[ChatMessage]:
        turns = [ChatMessage("assistant", None, tool_calls=tuple(calls))]
        for call, payload in zip(calls, payloads):
            turns.append(
                ChatMessage(
                    "tool",
                    format_tool_result(payload),
                    tool_call_id=call.id,
                    name=call.name,
                )
            )
        return turns

    # ------------------------------------------------------------------
    # Completion with fallback
    # ------------------------------------------------------------------

    def _backend_named(self, name: str) -> Backend:
        for backend in (self.primary, self.secondary):
            if backend is not None and backend.name == name:
                return backend
        raise BackendError(f"Unknown backend {name!r}", kind=ErrorKind.CONFIG_ERROR)

    async def _complete_with_fallback(
        self, request: CompletionRequest, classification: Classification
    ) -> BackendResponse | StreamHandle:
        """Call the primary; on failure make exactly one call to the secondary.

        The secondary gets the same messages without tools. If it fails too,
        the primary's error is raised.
        """
        assert self.primary is not None
        try:
            return await self.primary.complete(request)
        except BackendError as primary_error:
            if self.secondary is None:
                raise
            name = self.secondary.name
            model = select_model(classification, self.config.models_for(name))
            logger.warning(
                "%s failed (%s); falling back to %s/%s",
                self.primary.name,
                primary_error.kind.value,
                name,
                model,
            )
            fallback = replace(
                request,
                model=model,
                tools=None,
                max_tokens=self.config.max_tokens_for(name, model),
            )
            try:
                return await self.secondary.complete(fallback)
            except BackendError as secondary_error:
                logger.warning("Fallback %s also failed: %s", name, secondary_error)
                raise primary_error from None

    def _request(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        tools: bool,
        stream: bool,
        max_tokens: int,
    ) -> CompletionRequest:
        return CompletionRequest(
            model=model,
            messages=tuple(messages),
            tools=self.tools.definitions() if tools and self.tools is not None else None,
            stream=stream,
            max_tokens=max_tokens,
            temperature=self.config.temperature,
        )

    def _stream_usage(
        self, handle: StreamHandle, state: ParserState, messages: Sequence[ChatMessage]
    ) -> tuple[Usage, float]:
        usage = state.usage
        if usage is None:
            prompt = " ".join(m.content or "" for m in messages)
            usage = Usage(
                input_tokens=estimate_tokens(prompt),
                output_tokens=estimate_tokens(state.text + state.reasoning),
                estimated=True,
            )
        return usage, self.config.estimate_cost(
            handle.model, usage.input_tokens, usage.output_tokens
        )

    # ------------------------------------------------------------------
    # Answering
    # ------------------------------------------------------------------

    async def _answer(
        self, text: str, request: ChatRequest, classification: Classification
    ) -> _Draft:
        assert self.primary is not None
        primary = self.primary.name
        model = select_model(classification, self.config.models_for(primary))
        logger.info("Using model: %s/%s", primary, model)
        native = self._uses_native_tools(model)

        preflight = _Preflight()
        if not native and classification.intent in DATA_INTENTS:
            preflight = await self._preflight(text, classification)
        messages = self._build_messages(text, request, classification, preflight.context)

        first = await self._complete_with_fallback(
            self._request(
                model,
                messages,
                tools=native,
                stream=False,
                max_tokens=self.config.max_tokens_for(primary, model),
            ),
            classification,
        )
        first = _expect_response(first)
        draft = _Draft(
            text=first.content,
            usage=first.usage,
            cost=first.cost,
            model=first.model,
            backend=first.backend,
            payloads=list(preflight.payloads),
        )

        if first.tool_calls and self.tools is not None:
            payloads = await self._execute_tool_calls(first.tool_calls)
            draft.payloads.extend(payloads)
            backend = self._backend_named(first.backend)
            final = _expect_response(
                await backend.complete(
                    self._request(
                        first.model,
                        [*messages, *self._tool_turns(first.tool_calls, payloads)],
                        tools=False,
                        stream=False,
                        max_tokens=self.config.limits.max_tokens_complex,
                    )
                )
            )
            draft.text = final.content
            draft.usage += final.usage
            draft.cost += final.cost
        return draft

    async def _answer_stream(
        self,
        text: str,
        request: ChatRequest,
        classification: Classification,
        on_event: EventCallback,
    ) -> _Draft:
        assert self.primary is not None
        primary = self.primary.name
        model = select_model(classification, self.config.models_for(primary))
        logger.info("Using model (stream): %s/%s", primary, model)
        native = self._uses_native_tools(model)
        tuning = self.config.extraction

        preflight = _Preflight()
        if not native and classification.intent in DATA_INTENTS:
            preflight = await self._preflight(text, classification)
            await _emit_payloads(on_event, preflight.payloads)
        messages = self._build_messages(text, request, classification, preflight.context)
        draft = _Draft(payloads=list(preflight.payloads))

        if not native:
            handle = await self._complete_with_fallback(
                self._request(
                    model,
                    messages,
                    tools=False,
                    stream=True,
                    max_tokens=self.config.max_tokens_for(primary, model),
                ),
                classification,
            )
            handle = _expect_stream(handle)
            state = await parse_stream(handle, on_event, tuning=tuning)
            draft.text = state.text
            draft.usage, draft.cost = self._stream_usage(handle, state, messages)
            draft.model, draft.backend = handle.model, handle.backend
            return draft

        first = await self._complete_with_fallback(
            self._request(
                model,
                messages,
                tools=True,
                stream=False,
                max_tokens=self.config.max_tokens_for(primary, model),
            ),
            classification,
        )
        first = _expect_response(first)
        draft.usage, draft.cost = first.usage, first.cost
        draft.model, draft.backend = first.model, first.backend
        if first.reasoning:
            await emit(on_event, StreamEvent("thinking", first.reasoning))

        if not (first.tool_calls and self.tools is not None):
            draft.text = first.content
            answer = extract_answer(first.content, tuning)
            await emit(on_event, StreamEvent("text", answer.message))
            return draft

        payloads = await self._execute_tool_calls(first.tool_calls)
        draft.payloads.extend(payloads)
        await _emit_payloads(on_event, payloads)

        found = [d for p in payloads for d in (p.get("deals") or [])]
        if found:
            last = messages[-1]
            messages[-1] = replace(
                last, content=(last.content or "") + deals_found_block(found)
            )

        backend = self._backend_named(first.backend)
        follow = [*messages, *self._tool_turns(first.tool_calls, payloads)]
        handle = _expect_stream(
            await backend.complete(
                self._request(
                    first.model,
                    follow,
                    tools=False,
                    stream=True,
                    max_tokens=self.config.limits.max_tokens_complex,
                )
            )
        )
        state = await parse_stream(handle, on_event, tuning=tuning)
        usage, cost = self._stream_usage(handle, state, follow)
        draft.text = state.text
        draft.usage += usage
        draft.cost += cost
        return draft

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _assemble(
        self,
        draft: _Draft,
        classification: Classification | None,
        request_id: str,
        start: float,
    ) -> ChatResult:
        answer = extract_answer(draft.text, self.config.extraction)
        deals = coupons = store = None
        for payload in draft.payloads:
            if payload.get("deals") is not None:
                deals = payload["deals"]
            if payload.get("coupons") is not None:
                coupons = payload["coupons"]
            if payload.get("store") is not None:
                store = payload["store"]
        return ChatResult(
            success=True,
            content=answer.message,
            deal_ids=answer.deal_ids,
            intent=classification.intent if classification else None,
            request_id=request_id,
            latency_ms=_elapsed_ms(start),
            usage=draft.usage,
            cost=draft.cost,
            model=draft.model,
            backend=draft.backend,
            deals=deals,
            coupons=coupons,
            store=store,
        )

    async def _degrade(
        self,
        exc: Exception,
        text: str,
        classification: Classification | None,
        request_id: str,
        start: float,
    ) -> ChatResult:
        """Apology plus best-effort popular deals; never raises."""
        if isinstance(exc, BackendError):
            kind, retryable = exc.kind, exc.retryable
            logger.error("Chat failed (%s): %s", kind.value, exc)
        elif isinstance(exc, DealChatError):
            kind, retryable = ErrorKind.UNKNOWN_ERROR, True
            logger.error("Chat failed: %s", exc)
        else:
            kind, retryable = ErrorKind.UNKNOWN_ERROR, True
            logger.exception("Unexpected chat failure")

        deals: list[dict[str, Any]] | None = None
        if self.tools is not None:
            query = (classification.entities.get("query") if classification else None) or text
            try:
                payload = await self.tools.execute("search_deals", {"query": query})
            except ToolError as e:
                logger.warning("Degraded search failed: %s", e)
            except Exception:  # noqa: BLE001
                logger.exception("Tool executor raised during degraded search")
            else:
                if payload.get("success", True) and payload.get("deals"):
                    deals = payload["deals"]

        return ChatResult(
            success=False,
            content=ERROR_RESPONSES["api_error"],
            error=str(exc),
            request_id=request_id,
            latency_ms=_elapsed_ms(start),
            status_code=kind.status_code,
            error_kind=kind,
            retryable=retryable,
            intent=Intent.SEARCH if deals else None,
            deals=deals,
            degraded=True,
        )

    async def _replay(
        self, result: ChatResult, on_event: EventCallback, *, request_id: str | None
    ) -> None:
        """Emit a finished result through the event channel."""
        if request_id is not None:
            await emit(on_event, StreamEvent("start", data={"requestId": request_id}))
        if not result.success and not result.degraded:
            await emit(on_event, StreamEvent("error", data={"error": result.error}))
            return
        await emit(on_event, StreamEvent("text", result.content))
        if result.deals:
            await emit(on_event, StreamEvent("deals", data={"deals": result.deals}))
        if result.coupons:
            await emit(on_event, StreamEvent("coupons", data={"coupons": result.coupons}))
        if result.deal_ids:
            await emit(on_event, StreamEvent("dealIds", data={"dealIds": result.deal_ids}))
        await emit(
            on_event,
            StreamEvent(
                "done",
                data={
                    "cached": result.cached,
                    "message": result.content,
                    "usage": result.usage.to_dict(),
                    "cost": result.cost,
                },
            ),
        )


async def _emit_payloads(
    on_event: EventCallback, payloads: Sequence[dict[str, Any]]
) -> None:
    for payload in payloads:
        if payload.get("deals"):
            await emit(on_event, StreamEvent("deals", data={"deals": payload["deals"]}))
        if payload.get("coupons"):
            await emit(
                on_event, StreamEvent("coupons", data={"coupons": payload["coupons"]})
            )


def _expect_response(value: BackendResponse | StreamHandle) -> BackendResponse:
    if isinstance(value, BackendResponse):
        return value
    raise BackendError(
        f"{value.backend} returned a stream for a non-streaming request",
        kind=ErrorKind.UNKNOWN_ERROR,
        backend=value.backend,
    )


def _expect_stream(value: BackendResponse | StreamHandle) -> StreamHandle:
    if isinstance(value, StreamHandle):
        return value
    raise BackendError(
        f"{value.backend} returned a full response for a streaming request",
        kind=ErrorKind.STREAM_ERROR,
        backend=value.backend,
    )
