"""Per-provider circuit breaker.

CLOSED passes calls through and counts consecutive health failures. At the
threshold the breaker OPENs and rejects every call with ProviderUnavailable
until the cool-down elapses; the next call after that is the single HALF_OPEN
trial. A successful trial closes the breaker, a failed one reopens it with a
widened cool-down.

Every transition is a synchronous block: nothing awaits between reading and
writing breaker state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import TYPE_CHECKING, TypeVar

from procureflow.errors import ProviderUnavailable
from procureflow.reliability.retry import is_transient_error

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from procureflow.config import BreakerSettings

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Health state of a provider."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for a circuit breaker."""

    failure_threshold: int = 5
    cooldown_s: float = 30.0
    cooldown_multiplier: float = 2.0
    max_cooldown_s: float = 300.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("CircuitBreakerConfig.failure_threshold must be >= 1")
        if self.cooldown_s <= 0:
            raise ValueError("CircuitBreakerConfig.cooldown_s must be > 0")
        if self.cooldown_multiplier < 1.0:
            raise ValueError("CircuitBreakerConfig.cooldown_multiplier must be >= 1")
        if self.max_cooldown_s < self.cooldown_s:
            raise ValueError("CircuitBreakerConfig.max_cooldown_s must be >= cooldown_s")

    @classmethod
    def from_settings(cls, settings: BreakerSettings) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=settings.failure_threshold,
            cooldown_s=settings.cooldown_s,
            cooldown_multiplier=settings.cooldown_multiplier,
            max_cooldown_s=settings.max_cooldown_s,
        )


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a breaker, for health endpoints and logs."""

    name: str
    state: CircuitState
    consecutive_failures: int
    last_failure_at: float | None
    open_until: float | None
    cooldown_s: float


class CircuitBreaker:
    """Failure-tracking state machine guarding one provider."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, CircuitState, CircuitState], None] | None = None,
        is_failure: Callable[[BaseException], bool] = is_transient_error,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._is_failure = is_failure

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._open_until: float | None = None
        self._cooldown_s = self.config.cooldown_s
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=self.name,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
            open_until=self._open_until,
            cooldown_s=self._cooldown_s,
        )

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            extra={
                "provider": self.name,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_s": self._cooldown_s,
            },
        )
        if self._on_state_change is not None:
            try:
                self._on_state_change(self.name, old_state, new_state)
            except Exception:
                logger.exception("Circuit breaker state-change hook failed")

    def _reject(self, retry_after_s: float | None) -> ProviderUnavailable:
        return ProviderUnavailable(
            f"{self.name} is temporarily unavailable (circuit {self._state.value})",
            provider=self.name,
            retry_after_s=retry_after_s,
            hint="The provider failed repeatedly; calls resume after the cool-down.",
        )

    def open_rejection(self) -> ProviderUnavailable | None:
        """The error a call would get right now, if the breaker is cooling down."""
        if self._state is not CircuitState.OPEN:
            return None
        now = self._clock()
        open_until = self._open_until or now
        return self._reject(open_until - now) if now < open_until else None

    def before_call(self) -> None:
        """Admit a call or raise ProviderUnavailable without invoking it."""
        if self._state is CircuitState.CLOSED:
            return

        if self._state is CircuitState.OPEN:
            rejection = self.open_rejection()
            if rejection is not None:
                raise rejection
            self._trial_in_flight = True
            self._transition(CircuitState.HALF_OPEN)
            return

        # HALF_OPEN: exactly one trial at a time.
        if self._trial_in_flight:
            raise self._reject(None)
        self._trial_in_flight = True

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._trial_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._open_until = None
            self._cooldown_s = self.config.cooldown_s
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        now = self._clock()
        self._consecutive_failures += 1
        self._last_failure_at = now
        self._trial_in_flight = False

        if self._state is CircuitState.HALF_OPEN:
            self._cooldown_s = min(
                self.config.max_cooldown_s,
                self._cooldown_s * self.config.cooldown_multiplier,
            )
            self._open_until = now + self._cooldown_s
            self._transition(CircuitState.OPEN)
        elif (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.config.failure_threshold
        ):
            self._cooldown_s = self.config.cooldown_s
            self._open_until = now + self._cooldown_s
            self._transition(CircuitState.OPEN)

    def _release_trial(self) -> None:
        # A cancelled trial says nothing about provider health.
        self._trial_in_flight = False

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* through the breaker, recording its outcome."""
        self.before_call()
        try:
            result = await fn()
        except asyncio.CancelledError:
            self._release_trial()
            raise
        except Exception as exc:
            # Non-transient errors mean the provider answered; health is fine.
            if self._is_failure(exc):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED (operator action or tests)."""
        self._consecutive_failures = 0
        self._open_until = None
        self._cooldown_s = self.config.cooldown_s
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)
