"""dealchat: LLM chat orchestration for a deals assistant.

Public API:
    - build_orchestrator(): Wire a ChatOrchestrator from a ProviderConfig
    - ChatOrchestrator: chat(), chat_stream(), health_check()
    - ChatRequest / ChatResult: Request and result types
    - ProviderConfig: Configuration snapshot
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dealchat.cache import MemoryCache, RateLimitStatus, ResponseCache
from dealchat.classifier import Classification, Classifier, RuleClassifier
from dealchat.config import ProviderConfig, estimate_cost
from dealchat.errors import (
    BackendError,
    ConfigurationError,
    DealChatError,
    ErrorKind,
    RateLimitError,
    StreamError,
    ToolError,
)
from dealchat.orchestrator import ChatOrchestrator, ChatRequest, ChatResult
from dealchat.retry import RetryPolicy
from dealchat.streaming import StreamEvent
from dealchat.tools import ToolExecutor, ToolRegistry, deal_tool_registry

if TYPE_CHECKING:
    from dealchat.backends.base import Backend

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("dealchat")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("dealchat").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


def build_backend(name: str | None, config: ProviderConfig) -> Backend | None:
    """Construct the backend client registered under *name*."""
    if name is None:
        return None

    if name == "mock":
        from dealchat.backends.mock import MockBackend

        return MockBackend(config=config)

    api_key = config.api_key_for(name)  # type: ignore[arg-type]
    if not api_key:
        raise ConfigurationError(
            f"api_key required for {name}",
            hint=f"Set {name.upper()}_API_KEY or pass ProviderConfig(api_keys=...).",
        )

    if name == "openrouter":
        from dealchat.backends.openai import OpenRouterBackend

        return OpenRouterBackend(api_key, config=config)

    if name == "openai":
        from dealchat.backends.openai import OpenAIBackend

        return OpenAIBackend(api_key, config=config)

    if name == "anthropic":
        from dealchat.backends.anthropic import AnthropicBackend

        return AnthropicBackend(api_key, config=config)

    if name == "gemini":
        from dealchat.backends.gemini import GeminiBackend

        return GeminiBackend(api_key, config=config)

    raise ConfigurationError(f"Unknown backend: {name!r}")


def build_backends(config: ProviderConfig) -> tuple[Backend | None, Backend | None]:
    """Primary and secondary backends for *config*."""
    return (
        build_backend(config.active_backend, config),
        build_backend(config.fallback_backend, config),
    )


def build_orchestrator(
    config: ProviderConfig | None = None,
    *,
    cache: ResponseCache | None = None,
    classifier: Classifier | None = None,
    tools: ToolExecutor | None = None,
) -> ChatOrchestrator:
    """Wire a :class:`ChatOrchestrator` with in-process defaults.

    Args:
        config: Configuration snapshot; resolved from the environment if omitted.
        cache: Response cache and rate limiter; defaults to :class:`MemoryCache`.
        classifier: Intent classifier; defaults to :class:`RuleClassifier`.
        tools: Tool executor; without one, tool calling is disabled.

    Example:
        orchestrator = build_orchestrator(tools=deal_tool_registry(handlers))
        result = await orchestrator.chat(ChatRequest("laptop deals under $800"))
        print(result.content)
    """
    config = config or ProviderConfig.from_env()
    primary, secondary = build_backends(config)
    if primary is None:
        logger.warning("No AI backend configured; chat requests will be rejected")
    else:
        logger.info(
            "AI backend: %s (fallback: %s)",
            primary.name,
            secondary.name if secondary else "none",
        )
    return ChatOrchestrator(
        config,
        primary=primary,
        secondary=secondary,
        cache=cache or MemoryCache(config.cache_ttls, config.rate_limits),
        classifier=classifier or RuleClassifier(),
        tools=tools,
    )


# Re-export for convenience
__all__ = [
    "BackendError",
    "ChatOrchestrator",
    "ChatRequest",
    "ChatResult",
    "Classification",
    "Classifier",
    "ConfigurationError",
    "DealChatError",
    "ErrorKind",
    "MemoryCache",
    "ProviderConfig",
    "RateLimitError",
    "RateLimitStatus",
    "ResponseCache",
    "RetryPolicy",
    "RuleClassifier",
    "StreamError",
    "StreamEvent",
    "ToolError",
    "ToolExecutor",
    "ToolRegistry",
    "build_backends",
    "build_orchestrator",
    "deal_tool_registry",
    "estimate_cost",
]
