"""Circuit breaker state machine."""

from __future__ import annotations

import asyncio

import pytest

from procureflow.errors import APIError, ProviderUnavailable
from procureflow.reliability.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from tests.helpers import FakeClock

pytestmark = pytest.mark.unit


def _transient() -> APIError:
    return APIError("upstream 503", status_code=503)


def _breaker(clock: FakeClock, **overrides) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        failure_threshold=overrides.pop("failure_threshold", 3),
        cooldown_s=overrides.pop("cooldown_s", 10.0),
        cooldown_multiplier=2.0,
        max_cooldown_s=overrides.pop("max_cooldown_s", 30.0),
    )
    return CircuitBreaker("openai", config, clock=clock, **overrides)


class _Upstream:
    def __init__(self, outcome: BaseException | str = "ok") -> None:
        self.outcome = outcome
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


async def _trip(breaker: CircuitBreaker, upstream: _Upstream, times: int) -> None:
    for _ in range(times):
        with pytest.raises(APIError):
            await breaker.call(upstream)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects_without_calling(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    upstream = _Upstream(_transient())

    await _trip(breaker, upstream, 3)
    assert breaker.state is CircuitState.OPEN

    for _ in range(5):
        with pytest.raises(ProviderUnavailable) as exc:
            await breaker.call(upstream)
        assert exc.value.retry_after_s == pytest.approx(10.0)

    assert upstream.calls == 3


@pytest.mark.asyncio
async def test_success_resets_the_failure_count(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    failing = _Upstream(_transient())

    await _trip(breaker, failing, 2)
    assert await breaker.call(_Upstream("ok")) == "ok"
    await _trip(breaker, failing, 2)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot().consecutive_failures == 2


@pytest.mark.asyncio
async def test_non_transient_errors_do_not_count(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    upstream = _Upstream(APIError("bad request", status_code=400))

    for _ in range(10):
        with pytest.raises(APIError):
            await breaker.call(upstream)

    assert breaker.state is CircuitState.CLOSED
    assert upstream.calls == 10


@pytest.mark.asyncio
async def test_successful_trial_closes_the_circuit(clock: FakeClock) -> None:
    transitions: list[tuple[CircuitState, CircuitState]] = []
    breaker = _breaker(clock, on_state_change=lambda _n, old, new: transitions.append((old, new)))
    upstream = _Upstream(_transient())
    await _trip(breaker, upstream, 3)

    clock.advance(10.0)
    upstream.outcome = "recovered"

    assert await breaker.call(upstream) == "recovered"
    assert breaker.state is CircuitState.CLOSED
    assert transitions == [
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


@pytest.mark.asyncio
async def test_half_open_admits_exactly_one_trial(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, _Upstream(_transient()), 3)
    clock.advance(10.0)

    release = asyncio.Event()
    trial_calls = 0

    async def slow_trial() -> str:
        nonlocal trial_calls
        trial_calls += 1
        await release.wait()
        return "ok"

    trial = asyncio.create_task(breaker.call(slow_trial))
    await asyncio.sleep(0)
    assert breaker.state is CircuitState.HALF_OPEN

    with pytest.raises(ProviderUnavailable):
        await breaker.call(slow_trial)

    release.set()
    assert await trial == "ok"
    assert trial_calls == 1
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failed_trial_reopens_with_widened_cooldown(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    upstream = _Upstream(_transient())
    await _trip(breaker, upstream, 3)

    clock.advance(10.0)
    await _trip(breaker, upstream, 1)
    assert breaker.state is CircuitState.OPEN
    assert breaker.snapshot().cooldown_s == 20.0

    clock.advance(10.0)
    with pytest.raises(ProviderUnavailable):
        await breaker.call(upstream)

    clock.advance(10.0)
    await _trip(breaker, upstream, 1)
    # Widening is capped.
    assert breaker.snapshot().cooldown_s == 30.0


@pytest.mark.asyncio
async def test_cancelled_trial_frees_the_half_open_slot(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    await _trip(breaker, _Upstream(_transient()), 3)
    clock.advance(10.0)

    async def hang() -> str:
        await asyncio.Event().wait()
        return "never"

    trial = asyncio.create_task(breaker.call(hang))
    await asyncio.sleep(0)
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    assert await breaker.call(_Upstream("ok")) == "ok"
    assert breaker.state is CircuitState.CLOSED


def test_reset_forces_closed(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    for _ in range(3):
        breaker.before_call()
        breaker.record_failure()
    assert breaker.state is CircuitState.OPEN

    breaker.reset()

    assert breaker.state is CircuitState.CLOSED
    breaker.before_call()


def test_open_rejection_only_while_cooling_down(clock: FakeClock) -> None:
    breaker = _breaker(clock)
    assert breaker.open_rejection() is None

    for _ in range(3):
        breaker.before_call()
        breaker.record_failure()
    clock.advance(4.0)

    rejection = breaker.open_rejection()
    assert isinstance(rejection, ProviderUnavailable)
    assert rejection.retry_after_s == pytest.approx(6.0)

    clock.advance(6.0)
    assert breaker.open_rejection() is None
    assert breaker.state is CircuitState.OPEN


@pytest.mark.parametrize(
    "kwargs",
    [
        {"failure_threshold": 0},
        {"cooldown_s": 0},
        {"cooldown_multiplier": 0.5},
        {"cooldown_s": 10, "max_cooldown_s": 5},
    ],
)
def test_config_validation(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        CircuitBreakerConfig(**kwargs)
