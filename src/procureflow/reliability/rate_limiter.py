"""Per-provider concurrency and throughput gate.

Admission is strictly FIFO: a releasing caller hands its slot directly to the
oldest waiter, so a newcomer can never overtake a queued call. An optional
requests-per-minute budget (sliding window) is applied per provider request;
when it is exhausted callers wait for the window rather than fail.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING, TypeVar

from procureflow.errors import ProviderUnavailable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

_WINDOW_S = 60.0


@dataclass(frozen=True)
class RateLimiterSnapshot:
    """Point-in-time view of a limiter."""

    name: str
    in_flight: int
    queued: int
    max_concurrency: int
    requests_per_minute: int | None


@dataclass
class RateLimiter:
    """FIFO concurrency limiter with an optional requests-per-minute budget."""

    name: str
    max_concurrency: int = 4
    requests_per_minute: int | None = None
    max_queue_depth: int | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    on_queue_change: Callable[[str, int], None] | None = None

    _in_flight: int = field(default=0, init=False)
    _waiters: deque[asyncio.Future[None]] = field(default_factory=deque, init=False)
    _request_times: deque[float] = field(default_factory=deque, init=False)
    _budget_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("RateLimiter.max_concurrency must be >= 1")
        if self.requests_per_minute is not None and self.requests_per_minute < 1:
            raise ValueError("RateLimiter.requests_per_minute must be >= 1 or None")
        if self.max_queue_depth is not None and self.max_queue_depth < 1:
            raise ValueError("RateLimiter.max_queue_depth must be >= 1 or None")

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def snapshot(self) -> RateLimiterSnapshot:
        return RateLimiterSnapshot(
            name=self.name,
            in_flight=self._in_flight,
            queued=self.queued,
            max_concurrency=self.max_concurrency,
            requests_per_minute=self.requests_per_minute,
        )

    def _queue_changed(self) -> None:
        if self.on_queue_change is None:
            return
        try:
            self.on_queue_change(self.name, self.queued)
        except Exception:
            logger.exception("Rate limiter queue hook failed")

    async def acquire(self) -> None:
        """Wait for a concurrency slot, in arrival order."""
        if self._in_flight < self.max_concurrency and not self._waiters:
            self._in_flight += 1
            return

        if self.max_queue_depth is not None and self.queued >= self.max_queue_depth:
            raise ProviderUnavailable(
                f"{self.name} is saturated ({self.queued} calls queued)",
                provider=self.name,
                hint="Too many concurrent requests; try again shortly.",
            )

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._queue_changed()
        logger.debug(
            "Queued for provider slot",
            extra={"provider": self.name, "queued": self.queued},
        )
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was already handed over; pass it on.
                self.release()
            else:
                with suppress(ValueError):
                    self._waiters.remove(waiter)
                self._queue_changed()
            raise

    def release(self) -> None:
        """Return a slot, handing it to the oldest live waiter if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                self._queue_changed()
                return
        self._in_flight -= 1

    async def throttle(self) -> float:
        """Consume one request from the per-minute budget; return the wait applied."""
        if self.requests_per_minute is None:
            return 0.0
        waited = 0.0
        async with self._budget_lock:
            while True:
                now = self.clock()
                while self._request_times and self._request_times[0] <= now - _WINDOW_S:
                    self._request_times.popleft()
                if len(self._request_times) < self.requests_per_minute:
                    self._request_times.append(now)
                    return waited
                delay = self._request_times[0] + _WINDOW_S - now
                logger.debug(
                    "Requests-per-minute budget exhausted; waiting",
                    extra={"provider": self.name, "delay_s": round(delay, 3)},
                )
                await self.sleep(delay)
                waited += delay

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a concurrency slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Await admission, run *fn*, and always release the slot."""
        async with self.slot():
            await self.throttle()
            return await fn()
