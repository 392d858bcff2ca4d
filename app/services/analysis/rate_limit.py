"""Pacing primitives for oracle calls: an async token bucket and retry backoff."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator
from random import SystemRandom
from typing import Any


class RateLimiter:
    """Async token bucket; ``acquire`` suspends until a token is available."""

    def __init__(
        self,
        *,
        rate_per_second: float | None,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if rate_per_second is not None and rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0 (or None for unlimited)")
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._rate = rate_per_second
        self._capacity = float(capacity)
        self._tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def every(cls, interval_seconds: float, **kwargs: Any) -> RateLimiter:
        """One call per ``interval_seconds``; a non-positive interval disables pacing."""
        rate = None if interval_seconds <= 0 else 1.0 / interval_seconds
        return cls(rate_per_second=rate, **kwargs)

    async def acquire(self) -> float:
        """Take one token and return how long the caller waited."""
        if self._rate is None:
            return 0.0
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                wait_for = (1.0 - self._tokens) / self._rate
                await self._sleep(wait_for)
                waited += wait_for

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)


def exponential_backoff(
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    factor: float = 2.0,
    max_delay: float = 8.0,
    jitter: float = 0.1,
) -> Iterator[tuple[int, float]]:
    """Yield (attempt, delay_seconds) pairs; the delay applies after a failed attempt.

    Defaults fit oracle rate-limit retries inside one enrichment request: three
    attempts from half a second, capped at eight. A zero base delay is accepted
    so a zero ``retry_backoff_seconds`` retries immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if base_delay < 0 or max_delay < 0:
        raise ValueError("delays must be >= 0")
    if factor < 1:
        raise ValueError("factor must be >= 1")

    rng = SystemRandom()
    delay = base_delay
    for attempt in range(1, max_attempts + 1):
        offset = rng.uniform(0, delay * jitter) if jitter > 0 and delay > 0 else 0.0
        yield attempt, min(delay + offset, max_delay)
        delay = min(delay * factor, max_delay)
