"""Configuration: a frozen ProviderConfig snapshot resolved from the environment."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from types import MappingProxyType
from typing import TYPE_CHECKING, Literal

from dotenv import load_dotenv

from dealchat.errors import ConfigurationError
from dealchat.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping

load_dotenv()

BackendName = Literal["openrouter", "openai", "gemini", "anthropic", "mock"]
Complexity = Literal["simple", "complex"]

# Active-backend preference when several keys are present.
BACKEND_PRIORITY: tuple[BackendName, ...] = ("openrouter", "openai", "gemini", "anthropic")

API_KEY_ENV_VARS: dict[BackendName, str] = {
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


@dataclass(frozen=True)
class ModelSet:
    """Model identifiers used by one backend."""

    simple: str
    complex: str
    embedding: str | None = None


@dataclass(frozen=True)
class ModelProfile:
    """Per-model pricing (USD per 1M tokens) and capability flags."""

    input_per_m: float
    output_per_m: float
    #: False for models known to mishandle native function calling.
    supports_tools: bool = True


DEFAULT_MODELS: Mapping[BackendName, ModelSet] = MappingProxyType(
    {
        "openai": ModelSet("gpt-4o-mini", "gpt-4o", "text-embedding-3-small"),
        "gemini": ModelSet(
            "gemini-2.0-flash-exp", "gemini-1.5-pro-latest", "text-embedding-004"
        ),
        "openrouter": ModelSet(
            "deepseek/deepseek-r1-0528:free",
            "deepseek/deepseek-r1-0528:free",
            "text-embedding-3-small",
        ),
        "anthropic": ModelSet("claude-3-5-haiku-latest", "claude-3-5-sonnet-latest"),
        "mock": ModelSet("mock-simple", "mock-complex"),
    }
)

DEFAULT_COST_TABLE: Mapping[str, ModelProfile] = MappingProxyType(
    {
        "gpt-4o-mini": ModelProfile(0.15, 0.60),
        "gpt-4o": ModelProfile(2.50, 10.00),
        "text-embedding-3-small": ModelProfile(0.02, 0.0),
        "gemini-2.0-flash-exp": ModelProfile(0.075, 0.30),
        "gemini-1.5-pro-latest": ModelProfile(1.25, 5.00),
        "text-embedding-004": ModelProfile(0.025, 0.0),
        "deepseek/deepseek-r1-0528:free": ModelProfile(0.0, 0.0, supports_tools=False),
        "deepseek/deepseek-chat": ModelProfile(0.14, 0.28, supports_tools=False),
        "claude-3-5-haiku-latest": ModelProfile(0.80, 4.00),
        "claude-3-5-sonnet-latest": ModelProfile(3.00, 15.00),
        "mock-simple": ModelProfile(0.0, 0.0),
        "mock-complex": ModelProfile(0.0, 0.0),
    }
)

#: Row used for models missing from the cost table.
DEFAULT_MODEL_PROFILE = ModelProfile(0.15, 0.60)


@dataclass(frozen=True)
class Limits:
    """Input, context and output bounds."""

    max_input_length: int = 2000
    max_history: int = 10
    max_tool_results: int = 10
    max_tokens_simple: int = 2000
    max_tokens_complex: int = 4000


@dataclass(frozen=True)
class WindowLimits:
    """Requests allowed per sliding window."""

    per_minute: int
    per_day: int


@dataclass(frozen=True)
class RateLimits:
    """Rate limits for anonymous (``ip:``) and signed-in (``u:``) identities."""

    guest: WindowLimits = WindowLimits(per_minute=5, per_day=20)
    authenticated: WindowLimits = WindowLimits(per_minute=20, per_day=500)

    def for_identity(self, identity: str) -> WindowLimits:
        """Pick the limits that apply to an identity key."""
        return self.authenticated if identity.startswith("u:") else self.guest


@dataclass(frozen=True)
class CacheTtls:
    """Cache entry lifetimes in seconds."""

    exact: int = 300
    semantic: int = 900
    tool: int = 120


@dataclass(frozen=True)
class FeatureFlags:
    """Runtime kill switches."""

    enabled: bool = True
    streaming: bool = True
    caching: bool = True


@dataclass(frozen=True)
class ExtractionTuning:
    """Heuristics for pulling the JSON answer out of noisy model text.

    These values work around specific model quirks (reasoning models that
    narrate before answering) and are tunable rather than fixed.
    """

    #: Minimum length of text before the first ``{`` to consider dropping it.
    prefix_threshold: int = 50
    lead_in_phrases: tuple[str, ...] = (
        "we are given",
        "according to",
        "however, note",
        "but note",
        "therefore",
        "final response",
        "proposed message",
    )
    #: (opening, closing) tag names delimiting reasoning blocks.
    reasoning_tags: tuple[tuple[str, str], ...] = (
        ("think", "think"),
        ("thinking", "thinking"),
        ("reasoning", "reasoning"),
        ("think", "redacted_reasoning"),
        ("redacted_reasoning", "redacted_reasoning"),
    )


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable per-process configuration snapshot.

    Construct once at startup (usually via :meth:`from_env`) and pass it to
    the backends and the orchestrator. Nothing mutates it afterwards.

    Example:
        config = ProviderConfig.from_env()
        orchestrator = build_orchestrator(config, cache=..., classifier=..., tools=...)
    """

    active_backend: BackendName | None = None
    fallback_backend: BackendName | None = None
    api_keys: Mapping[BackendName, str] = field(default_factory=dict)
    backend_models: Mapping[BackendName, ModelSet] = field(
        default_factory=lambda: DEFAULT_MODELS
    )
    cost_table: Mapping[str, ModelProfile] = field(
        default_factory=lambda: DEFAULT_COST_TABLE
    )
    default_profile: ModelProfile = DEFAULT_MODEL_PROFILE
    limits: Limits = field(default_factory=Limits)
    rate_limits: RateLimits = field(default_factory=RateLimits)
    cache_ttls: CacheTtls = field(default_factory=CacheTtls)
    features: FeatureFlags = field(default_factory=FeatureFlags)
    extraction: ExtractionTuning = field(default_factory=ExtractionTuning)
    request_timeout_s: float = 30.0
    openrouter_timeout_s: float = 60.0
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    site_url: str = "http://localhost:5173"
    site_name: str = "SaveBucks"
    temperature: float = 0.7
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Freeze mappings and validate cross-field invariants."""
        object.__setattr__(self, "api_keys", MappingProxyType(dict(self.api_keys)))
        known = (*BACKEND_PRIORITY, "mock")
        for name in (self.active_backend, self.fallback_backend):
            if name is not None and name not in known:
                raise ConfigurationError(
                    f"Unknown backend: {name!r}",
                    hint=f"Supported backends: {', '.join(known)}",
                )
        if self.fallback_backend is not None and (
            self.fallback_backend == self.active_backend
        ):
            raise ConfigurationError(
                "fallback_backend must differ from active_backend",
                hint="Unset AI_FALLBACK_BACKEND or choose another backend.",
            )
        for name in (self.active_backend, self.fallback_backend):
            if name is None or name == "mock":
                continue
            if name not in self.backend_models:
                raise ConfigurationError(f"No models configured for backend {name!r}")
            if not self.api_keys.get(name):
                raise ConfigurationError(
                    f"API key required for {name}",
                    hint=f"Set {API_KEY_ENV_VARS[name]} or pass api_keys=...",
                )
        if self.limits.max_input_length < 1:
            raise ConfigurationError(
                f"max_input_length must be >= 1, got {self.limits.max_input_length}"
            )
        for label, window in (
            ("guest", self.rate_limits.guest),
            ("authenticated", self.rate_limits.authenticated),
        ):
            if window.per_minute < 0 or window.per_day < 0:
                raise ConfigurationError(
                    f"{label} rate limits must be >= 0",
                    hint="Use 0 to block a caller class entirely.",
                )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ProviderConfig:
        """Resolve a snapshot from environment-style inputs."""
        env = os.environ if environ is None else environ

        api_keys: dict[BackendName, str] = {}
        for name, var in API_KEY_ENV_VARS.items():
            value = (env.get(var) or "").strip()
            if value:
                api_keys[name] = value

        use_mock = _env_flag(env, "AI_USE_MOCK", default=False)
        active: BackendName | None
        if use_mock:
            active = "mock"
        else:
            explicit = (env.get("AI_BACKEND") or "").strip().lower()
            if explicit:
                active = explicit  # type: ignore[assignment]
            else:
                active = next((n for n in BACKEND_PRIORITY if n in api_keys), None)

        fallback: BackendName | None = None
        explicit_fallback = (env.get("AI_FALLBACK_BACKEND") or "").strip().lower()
        if explicit_fallback and explicit_fallback != "none":
            fallback = explicit_fallback  # type: ignore[assignment]
        elif not explicit_fallback and active not in (None, "mock"):
            fallback = next(
                (n for n in BACKEND_PRIORITY if n != active and n in api_keys), None
            )

        models = dict(DEFAULT_MODELS)
        if active is not None and active in models:
            base = models[active]
            models[active] = ModelSet(
                simple=env.get("AI_MODEL_SIMPLE") or base.simple,
                complex=env.get("AI_MODEL_COMPLEX") or base.complex,
                embedding=env.get("AI_EMBEDDING_MODEL") or base.embedding,
            )

        return cls(
            active_backend=active,
            fallback_backend=fallback,
            api_keys=api_keys,
            backend_models=MappingProxyType(models),
            rate_limits=RateLimits(
                guest=WindowLimits(
                    per_minute=_env_int(env, "AI_RATE_LIMIT_GUEST_MIN", 5),
                    per_day=_env_int(env, "AI_RATE_LIMIT_GUEST_DAY", 20),
                ),
                authenticated=WindowLimits(
                    per_minute=_env_int(env, "AI_RATE_LIMIT_USER_MIN", 20),
                    per_day=_env_int(env, "AI_RATE_LIMIT_USER_DAY", 500),
                ),
            ),
            cache_ttls=CacheTtls(
                exact=_env_int(env, "AI_CACHE_EXACT_TTL", 300),
                semantic=_env_int(env, "AI_CACHE_SEMANTIC_TTL", 900),
                tool=_env_int(env, "AI_CACHE_TOOL_TTL", 120),
            ),
            features=FeatureFlags(
                enabled=_env_flag(env, "AI_ENABLED", default=True),
                streaming=_env_flag(env, "AI_STREAMING_ENABLED", default=True),
                caching=_env_flag(env, "AI_CACHING_ENABLED", default=True),
            ),
            request_timeout_s=float(_env_int(env, "AI_REQUEST_TIMEOUT_S", 30)),
            site_url=env.get("SITE_URL") or "http://localhost:5173",
        )

    def models_for(self, backend: BackendName) -> ModelSet:
        """Models configured for *backend*."""
        try:
            return self.backend_models[backend]
        except KeyError as e:
            raise ConfigurationError(f"No models configured for backend {backend!r}") from e

    def max_tokens_for(self, backend: BackendName, model: str) -> int:
        """Output token budget for *model*: complex models get the larger one."""
        if model == self.models_for(backend).complex:
            return self.limits.max_tokens_complex
        return self.limits.max_tokens_simple

    def profile(self, model: str) -> ModelProfile:
        """Cost/capability row for *model*, falling back to the default row."""
        return self.cost_table.get(model, self.default_profile)

    def supports_tools(self, model: str) -> bool:
        """Whether native tool definitions may be sent to *model*."""
        return self.profile(model).supports_tools

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        """Estimated USD cost of a call."""
        row = self.profile(model)
        return (input_tokens / 1_000_000 * row.input_per_m) + (
            output_tokens / 1_000_000 * row.output_per_m
        )

    def api_key_for(self, backend: BackendName) -> str | None:
        """API key for *backend*, if configured."""
        return self.api_keys.get(backend)

    @property
    def is_configured(self) -> bool:
        """True when an active backend is available."""
        return self.active_backend is not None

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        keys = {name: "[REDACTED]" for name in self.api_keys}
        return (
            f"ProviderConfig(active_backend={self.active_backend!r}, "
            f"fallback_backend={self.fallback_backend!r}, api_keys={keys}, "
            f"features={self.features})"
        )

    __repr__ = __str__


def estimate_cost(
    config: ProviderConfig, model: str, input_tokens: int, output_tokens: int
) -> float:
    """Module-level convenience for :meth:`ProviderConfig.estimate_cost`."""
    return config.estimate_cost(model, input_tokens, output_tokens)


def _env_flag(env: Mapping[str, str], key: str, *, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    return raw.strip().lower() != "false"


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as e:
        raise ConfigurationError(
            f"{key} must be an integer, got {raw!r}",
            hint=f"Unset {key} to use the default ({default}).",
        ) from e
