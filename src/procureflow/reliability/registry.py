"""Process-wide reliability state, keyed by provider.

One ProviderRegistry is built at startup and passed explicitly to the
adapter and orchestrator; tests construct their own for isolation.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import TYPE_CHECKING, TypeVar

from procureflow.providers.base import Provider
from procureflow.reliability.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitSnapshot,
)
from procureflow.reliability.rate_limiter import RateLimiter, RateLimiterSnapshot
from procureflow.reliability.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from procureflow.config import Settings
    from procureflow.metrics import AgentMetrics
    from procureflow.reliability.circuit_breaker import CircuitState

T = TypeVar("T")


@dataclass(frozen=True)
class ProviderHealth:
    """Combined breaker and limiter view for one provider."""

    provider: Provider
    circuit: CircuitSnapshot
    limiter: RateLimiterSnapshot


@dataclass(frozen=True)
class ProviderReliability:
    """The reliability components guarding one provider."""

    breaker: CircuitBreaker
    limiter: RateLimiter
    policy: RetryPolicy
    timeout_s: float


class ProviderRegistry:
    """Holds one breaker, limiter and retry policy per provider."""

    def __init__(
        self,
        entries: dict[Provider, ProviderReliability],
        *,
        metrics: AgentMetrics | None = None,
    ) -> None:
        self._entries = dict(entries)
        self.metrics = metrics

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        metrics: AgentMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> ProviderRegistry:
        def on_state_change(name: str, _old: CircuitState, new: CircuitState) -> None:
            if metrics is not None:
                metrics.record_circuit_state(provider=name, state=new.value)

        def on_queue_change(name: str, depth: int) -> None:
            if metrics is not None:
                metrics.record_queue_depth(provider=name, depth=depth)

        breaker_config = CircuitBreakerConfig.from_settings(settings.breaker)
        entries: dict[Provider, ProviderReliability] = {}
        for provider in Provider:
            block = settings.for_provider(provider)
            entries[provider] = ProviderReliability(
                breaker=CircuitBreaker(
                    provider.value,
                    breaker_config,
                    clock=clock,
                    on_state_change=on_state_change,
                ),
                limiter=RateLimiter(
                    provider.value,
                    max_concurrency=block.max_concurrency,
                    requests_per_minute=block.requests_per_minute,
                    max_queue_depth=block.max_queue_depth,
                    clock=clock,
                    on_queue_change=on_queue_change,
                ),
                policy=RetryPolicy.from_settings(block, settings.retry),
                timeout_s=block.timeout_s,
            )
            if metrics is not None:
                metrics.record_circuit_state(provider=provider.value, state="closed")
                metrics.record_queue_depth(provider=provider.value, depth=0)
        return cls(entries, metrics=metrics)

    def _entry(self, provider: Provider) -> ProviderReliability:
        try:
            return self._entries[provider]
        except KeyError:
            raise KeyError(f"No reliability state registered for {provider.value}") from None

    def breaker(self, provider: Provider) -> CircuitBreaker:
        return self._entry(provider).breaker

    def limiter(self, provider: Provider) -> RateLimiter:
        return self._entry(provider).limiter

    def policy(self, provider: Provider) -> RetryPolicy:
        return self._entry(provider).policy

    def timeout_s(self, provider: Provider) -> float:
        return self._entry(provider).timeout_s

    async def with_rate_limit(self, provider: Provider, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* once admitted by *provider*'s limiter."""
        return await self.limiter(provider).run(fn)

    async def with_retry(self, provider: Provider, factory: Callable[[], Awaitable[T]]) -> T:
        """Await ``factory()`` under *provider*'s retry policy, stopping if its breaker opens."""
        return await retry_async(
            factory,
            policy=self.policy(provider),
            provider=provider.value,
            abort_with=self.breaker(provider).open_rejection,
        )

    def snapshot(self) -> dict[Provider, ProviderHealth]:
        return {
            provider: ProviderHealth(
                provider=provider,
                circuit=entry.breaker.snapshot(),
                limiter=entry.limiter.snapshot(),
            )
            for provider, entry in self._entries.items()
        }

    def reset(self) -> None:
        """Close every breaker (operator action or tests)."""
        for entry in self._entries.values():
            entry.breaker.reset()
