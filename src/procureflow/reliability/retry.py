"""Sequential retries with capped exponential backoff.

Attempts never overlap. Each failure is classified once: transient errors
sleep and try again until the policy runs out, everything else ends the
sequence. An open circuit (``ProviderUnavailable``) escapes untouched so the
caller can fail fast.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from procureflow.errors import (
    RETRYABLE_STATUS_CODES,
    APIError,
    ProviderCallFailed,
    ProviderUnavailable,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from procureflow.config import ProviderSettings, RetrySettings

T = TypeVar("T")

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (TimeoutError, httpx.TimeoutException, httpx.TransportError)


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts a provider call gets and how long to wait between them."""

    max_attempts: int = 3
    initial_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = True
    # Wall-clock cap on the whole sequence; None disables it.
    max_elapsed_s: float | None = 90.0

    def __post_init__(self) -> None:
        problems = [
            (self.max_attempts >= 1, "max_attempts must be >= 1"),
            (self.initial_delay_s >= 0, "initial_delay_s must be >= 0"),
            (self.backoff_multiplier > 0, "backoff_multiplier must be > 0"),
            (self.max_delay_s >= 0, "max_delay_s must be >= 0"),
            (
                self.max_elapsed_s is None or self.max_elapsed_s >= 0,
                "max_elapsed_s must be >= 0 or None",
            ),
        ]
        for ok, message in problems:
            if not ok:
                raise ValueError(f"RetryPolicy.{message}")

    @classmethod
    def from_settings(cls, provider: ProviderSettings, retry: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=provider.max_attempts,
            initial_delay_s=retry.initial_delay_s,
            backoff_multiplier=retry.backoff_multiplier,
            max_delay_s=retry.max_delay_s,
            jitter=retry.jitter,
            max_elapsed_s=retry.max_elapsed_s,
        )

    def backoff(self, retry_index: int) -> float:
        """Delay before retry number *retry_index* (1-based).

        With jitter on, the delay is drawn uniformly from ``[0, capped]``.
        """
        exponent = max(0, retry_index - 1)
        capped = min(self.max_delay_s, self.initial_delay_s * self.backoff_multiplier**exponent)
        if capped <= 0:
            return 0.0
        return random.uniform(0.0, capped) if self.jitter else capped  # noqa: S311


def is_transient_error(exc: BaseException) -> bool:
    """True when another attempt could plausibly succeed.

    Cancellation and an open circuit never qualify. An APIError qualifies when
    the provider flagged it retryable or its HTTP status is a retryable one.
    Otherwise a timeout or transport failure anywhere in the chain qualifies.
    """
    if isinstance(exc, (asyncio.CancelledError, ProviderUnavailable)):
        return False
    if isinstance(exc, APIError):
        if exc.retryable:
            return True
        if exc.status_code is not None:
            return exc.status_code in RETRYABLE_STATUS_CODES or exc.status_code >= 500
    return any(isinstance(e, _NETWORK_ERRORS) for e in _walk_exception_chain(exc))


def _api_error_in_chain(exc: BaseException) -> APIError | None:
    return next((e for e in _walk_exception_chain(exc) if isinstance(e, APIError)), None)


def _failure(provider: str, attempt: int, exc: BaseException, reason: str) -> ProviderCallFailed:
    api_error = _api_error_in_chain(exc)
    return ProviderCallFailed(
        f"{provider} call failed after {attempt} attempt(s) ({reason}): {exc}",
        provider=provider,
        attempts=attempt,
        status_code=api_error.status_code if api_error is not None else None,
        hint=getattr(exc, "hint", None),
    )


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    provider: str,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    abort_with: Callable[[], ProviderUnavailable | None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``factory()`` until it succeeds or the policy gives up.

    A server-suggested ``retry_after_s`` on the error raises the backoff
    delay to at least that value. ``abort_with`` is consulted after every
    retryable failure, before any backoff: when it returns an error the
    sequence stops there and that error is raised.

    Raises:
        ProviderUnavailable: unchanged, as soon as any attempt reports it,
            or as returned by ``abort_with``.
        ProviderCallFailed: wrapping the last error once attempts are spent
            or a non-retryable error occurs.
    """
    deadline = None
    if policy.max_elapsed_s is not None:
        deadline = time.monotonic() + policy.max_elapsed_s
    attempt = 0

    while True:
        attempt += 1
        try:
            return await factory()
        except ProviderUnavailable:
            raise
        except Exception as exc:
            if not should_retry(exc):
                raise _failure(provider, attempt, exc, "non-retryable error") from exc
            if attempt >= policy.max_attempts:
                raise _failure(provider, attempt, exc, "retries exhausted") from exc
            unavailable = abort_with() if abort_with is not None else None
            if unavailable is not None:
                logger.info(
                    "Abandoning retries",
                    extra={
                        "provider": provider,
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                    },
                )
                raise unavailable from exc

            delay = policy.backoff(attempt)
            if isinstance(exc, APIError) and exc.retry_after_s is not None:
                delay = max(delay, float(exc.retry_after_s))
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise _failure(provider, attempt, exc, "retries exhausted") from exc
                delay = min(delay, remaining)

            logger.info(
                "Retrying provider call",
                extra={
                    "provider": provider,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "delay_s": round(delay, 3),
                    "error_type": type(exc).__name__,
                },
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            if delay > 0:
                await sleep(delay)
