"""Composition of the reliability components around one provider call.

Order, outermost first: rate limiter (concurrency slot held for the whole
logical call) → retry → per attempt: requests-per-minute budget → circuit
breaker gate → raw call under a hard timeout. Once the breaker opens, the
remaining retries are abandoned without waiting out their backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, TypeVar

from procureflow.errors import APIError, ProviderCallFailed, ProviderUnavailable
from procureflow.reliability.retry import retry_async

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from procureflow.metrics import AgentMetrics
    from procureflow.providers.base import Provider
    from procureflow.reliability.registry import ProviderRegistry

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ReliabilityPipeline:
    """Runs raw provider calls under the registry's limiter, retry and breaker."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        metrics: AgentMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.metrics = metrics if metrics is not None else registry.metrics
        self._sleep = sleep

    async def execute(
        self,
        provider: Provider,
        call: Callable[[], Awaitable[T]],
        *,
        model: str,
    ) -> T:
        """Run *call* reliably; raise ProviderUnavailable or ProviderCallFailed."""
        breaker = self.registry.breaker(provider)
        limiter = self.registry.limiter(provider)
        policy = self.registry.policy(provider)
        timeout_s = self.registry.timeout_s(provider)

        async def bounded_call() -> T:
            try:
                async with asyncio.timeout(timeout_s):
                    return await call()
            except TimeoutError as e:
                raise APIError(
                    f"{provider.value} call timed out after {timeout_s:g}s",
                    retryable=True,
                    provider=provider.value,
                    phase="generate",
                ) from e

        async def attempt() -> T:
            await limiter.throttle()
            return await breaker.call(bounded_call)

        start = time.monotonic()
        status = "success"
        try:
            async with limiter.slot():
                return await retry_async(
                    attempt,
                    policy=policy,
                    provider=provider.value,
                    abort_with=breaker.open_rejection,
                    sleep=self._sleep,
                )
        except ProviderUnavailable as e:
            status = "unavailable"
            logger.warning(
                "Provider unavailable",
                extra={
                    "provider": provider.value,
                    "model": model,
                    "retry_after_s": e.retry_after_s,
                },
            )
            raise
        except ProviderCallFailed as e:
            status = "error"
            logger.error(
                "Provider call failed",
                extra={
                    "provider": provider.value,
                    "model": model,
                    "attempts": e.attempts,
                    "status_code": e.status_code,
                    "error_type": type(e.__cause__).__name__,
                },
            )
            raise
        except asyncio.CancelledError:
            status = "cancelled"
            raise
        finally:
            if self.metrics is not None:
                self.metrics.record_llm_call(
                    provider=provider.value,
                    model=model,
                    status=status,
                    duration_s=time.monotonic() - start,
                )
