"""Configuration: environment-driven Settings and frozen per-call ProviderConfig."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from typing import TYPE_CHECKING, Any

import dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from procureflow.errors import ConfigurationError
from procureflow.providers.base import Provider

if TYPE_CHECKING:
    from procureflow.providers.models import ToolDefinition

# Checked in this order when no explicit provider is requested.
_API_KEY_ENV_VARS: dict[Provider, tuple[str, ...]] = {
    Provider.OPENAI: ("OPENAI_API_KEY",),
    Provider.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}

_DEFAULT_MODELS: dict[Provider, str] = {
    Provider.OPENAI: "gpt-4o-mini",
    Provider.GEMINI: "gemini-2.0-flash",
}


class ProviderSettings(BaseModel):
    """Per-provider model and throughput settings."""

    model_config = ConfigDict(frozen=True)

    model: str
    requests_per_minute: int | None = Field(default=10, ge=1)
    max_concurrency: int = Field(default=4, ge=1)
    max_queue_depth: int | None = Field(default=None, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    timeout_s: float = Field(default=30.0, gt=0)


class RetrySettings(BaseModel):
    """Backoff shape shared by every provider."""

    model_config = ConfigDict(frozen=True)

    initial_delay_s: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=0)
    max_delay_s: float = Field(default=30.0, ge=0)
    jitter: bool = True
    max_elapsed_s: float | None = Field(default=90.0, ge=0)


class BreakerSettings(BaseModel):
    """Circuit breaker thresholds."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, ge=1)
    cooldown_s: float = Field(default=30.0, gt=0)
    cooldown_multiplier: float = Field(default=2.0, ge=1.0)
    max_cooldown_s: float = Field(default=300.0, gt=0)


class AgentSettings(BaseModel):
    """Bounds on a single agent turn."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=10, ge=1)
    max_tool_calls_per_turn: int = Field(default=15, ge=1)
    history_token_budget: int = Field(default=3000, ge=0)
    max_history_messages: int = Field(default=50, ge=0)
    tool_timeout_s: float = Field(default=5.0, gt=0)


class Settings(BaseModel):
    """Process-wide settings, read once at startup.

    Example:
        settings = Settings.from_env()
        provider = resolve_provider(settings)
    """

    model_config = ConfigDict(frozen=True)

    provider_override: Provider | None = None
    openai_api_key: SecretStr | None = None
    gemini_api_key: SecretStr | None = None
    openai: ProviderSettings = Field(
        default_factory=lambda: ProviderSettings(
            model=_DEFAULT_MODELS[Provider.OPENAI],
            requests_per_minute=60,
            max_attempts=3,
        )
    )
    gemini: ProviderSettings = Field(
        default_factory=lambda: ProviderSettings(
            model=_DEFAULT_MODELS[Provider.GEMINI],
            requests_per_minute=15,
            max_attempts=4,
        )
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    service_name: str = "procureflow-agent"
    environment: str = "development"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables (after loading ``.env``)."""
        if environ is None:
            dotenv.load_dotenv()
            environ = os.environ

        def get(name: str) -> str | None:
            value = environ.get(name)
            return value.strip() if value and value.strip() else None

        def provider_block(prefix: str, defaults: ProviderSettings) -> dict[str, Any]:
            block: dict[str, Any] = defaults.model_dump()
            overrides = {
                "model": get(f"{prefix}_MODEL"),
                "requests_per_minute": get(f"{prefix}_RPM_LIMIT"),
                "max_concurrency": get(f"{prefix}_MAX_CONCURRENCY"),
                "max_queue_depth": get(f"{prefix}_MAX_QUEUE_DEPTH"),
                "max_attempts": get(f"{prefix}_MAX_ATTEMPTS"),
            }
            block.update({k: v for k, v in overrides.items() if v is not None})
            timeout_ms = get("LLM_TIMEOUT_MS")
            if timeout_ms is not None:
                block["timeout_s"] = _ms_to_s("LLM_TIMEOUT_MS", timeout_ms)
            return block

        base = cls()
        data: dict[str, Any] = {
            "openai_api_key": get("OPENAI_API_KEY"),
            "gemini_api_key": get("GEMINI_API_KEY") or get("GOOGLE_API_KEY"),
            "openai": provider_block("OPENAI", base.openai),
            "gemini": provider_block("GEMINI", base.gemini),
        }

        override = get("AI_PROVIDER")
        if override is not None:
            try:
                data["provider_override"] = Provider.parse(override)
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown provider in AI_PROVIDER: {override!r}",
                    hint="Supported providers: 'openai', 'gemini'",
                ) from e

        breaker: dict[str, Any] = {}
        if (threshold := get("CIRCUIT_BREAKER_THRESHOLD")) is not None:
            breaker["failure_threshold"] = threshold
        if (reset_ms := get("CIRCUIT_BREAKER_RESET_TIMEOUT")) is not None:
            breaker["cooldown_s"] = _ms_to_s("CIRCUIT_BREAKER_RESET_TIMEOUT", reset_ms)
        if breaker:
            data["breaker"] = breaker

        agent: dict[str, Any] = {}
        if (iterations := get("AGENT_MAX_ITERATIONS")) is not None:
            agent["max_iterations"] = iterations
        if (budget := get("AGENT_HISTORY_TOKEN_BUDGET")) is not None:
            agent["history_token_budget"] = budget
        if agent:
            data["agent"] = agent

        scalars = {
            "temperature": get("LLM_TEMPERATURE"),
            "max_tokens": get("LLM_MAX_TOKENS"),
            "service_name": get("SERVICE_NAME"),
            "environment": get("APP_ENV"),
            "log_level": get("LOG_LEVEL"),
        }
        data.update({k: v for k, v in scalars.items() if v is not None})

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration: {e.error_count()} error(s)",
                hint=str(e),
            ) from e

    def api_key(self, provider: Provider) -> str | None:
        """Return the configured credential for *provider*, if any."""
        secret = (
            self.openai_api_key if provider is Provider.OPENAI else self.gemini_api_key
        )
        return secret.get_secret_value() if secret is not None else None

    def for_provider(self, provider: Provider) -> ProviderSettings:
        """Return the throughput settings block for *provider*."""
        return self.openai if provider is Provider.OPENAI else self.gemini

    def provider_config(
        self,
        provider: Provider,
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: tuple[ToolDefinition, ...] = (),
    ) -> ProviderConfig:
        """Build an immutable per-call config from defaults plus overrides."""
        return ProviderConfig(
            provider=provider,
            model=model or self.for_provider(provider).model,
            temperature=self.temperature if temperature is None else temperature,
            max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            tools=tools,
        )


@dataclass(frozen=True)
class ProviderConfig:
    """Selected backend, model and sampling parameters for one call."""

    provider: Provider
    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    tools: tuple[ToolDefinition, ...] = ()

    def __post_init__(self) -> None:
        """Validate sampling parameters."""
        if not self.model:
            raise ConfigurationError(
                "ProviderConfig.model must be a non-empty string",
                hint=f"Default models: {', '.join(_DEFAULT_MODELS.values())}",
            )
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(
                f"temperature must be between 0 and 2, got {self.temperature}",
            )
        if self.max_tokens < 1:
            raise ConfigurationError(
                f"max_tokens must be >= 1, got {self.max_tokens}",
            )


def resolve_provider(settings: Settings, override: str | Provider | None = None) -> Provider:
    """Pick the active provider: explicit override, then first configured credential.

    Raises:
        ConfigurationError: naming exactly the environment variable(s) missing.
    """
    requested = override if override is not None else settings.provider_override
    if requested is not None:
        try:
            provider = Provider.parse(requested)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown provider: {requested!r}",
                hint="Supported providers: 'openai', 'gemini'",
            ) from e
        if settings.api_key(provider) is None:
            env_vars = " or ".join(_API_KEY_ENV_VARS[provider])
            raise ConfigurationError(
                f"API key required for {provider.value}: {env_vars} is not set",
                hint=f"Set {env_vars} or choose another provider via AI_PROVIDER.",
            )
        return provider

    for provider in _API_KEY_ENV_VARS:
        if settings.api_key(provider) is not None:
            return provider

    missing = ", ".join(name for names in _API_KEY_ENV_VARS.values() for name in names)
    raise ConfigurationError(
        f"No LLM provider configured: none of {missing} is set",
        hint="Set OPENAI_API_KEY or GEMINI_API_KEY (GOOGLE_API_KEY also works).",
    )


def _ms_to_s(name: str, raw: str) -> float:
    try:
        return float(raw) / 1000.0
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number of milliseconds, got {raw!r}",
        ) from e
