"""Rate limiter for Bitrix24 API requests."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Requests-per-second ceiling with a concurrent request limit.

    Request starts are spaced at least ``1 / requests_per_second`` apart.
    Callers over budget wait for their slot; no request is ever dropped.
    After the portal throttles us, :meth:`penalize` pushes the next slot out.
    """

    def __init__(
        self,
        requests_per_second: float = 1.0,
        max_concurrent: int = 2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            requests_per_second: Maximum request starts per second.
            max_concurrent: Maximum concurrent requests allowed.
            clock: Monotonic clock, injectable for tests.
            sleep: Async sleep, injectable for tests.
        """
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self._interval = 1.0 / requests_per_second
        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0
        self._total_requests = 0
        self._total_wait = 0.0

    async def acquire(self) -> None:
        """Wait for a request slot and a concurrency permit."""
        await self._semaphore.acquire()
        try:
            async with self._lock:
                now = self._clock()
                slot = max(now, self._next_slot)
                self._next_slot = slot + self._interval
                wait = slot - now
                if wait > 0:
                    self._total_wait += wait
                    logger.debug("Rate limit wait", seconds=round(wait, 3))
                    # Sleeping under the lock keeps request starts in slot order
                    await self._sleep(wait)
                self._total_requests += 1
        except BaseException:
            self._semaphore.release()
            raise

    def release(self) -> None:
        """Release the concurrency permit after a request completes."""
        self._semaphore.release()

    def penalize(self, delay: float) -> None:
        """Delay the next request start by at least ``delay`` seconds."""
        if delay <= 0:
            return
        self._next_slot = max(self._next_slot, self._clock() + delay)
        logger.warning("Rate limit backoff", seconds=delay)

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.release()

    @property
    def interval(self) -> float:
        """Minimum spacing between request starts in seconds."""
        return self._interval

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def total_wait_seconds(self) -> float:
        return self._total_wait
