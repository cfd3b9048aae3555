"""Token bucket rate limiter for outbound TronGrid requests."""

import asyncio
import time
from typing import Callable


class RateLimiter:
    """Token bucket holding at most ``rate`` tokens per ``interval`` seconds.

    Tokens come back in whole windows: every full ``interval`` elapsed since
    the last refill adds ``rate`` tokens, capped at capacity. A full bucket
    does not bank idle time, so the window restarts at the first draw from a
    full bucket.

    One limiter belongs to one client (one API key); it is not shared across
    keys.
    """

    def __init__(
        self,
        rate: int = 12,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate < 1:
            raise ValueError("rate must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.rate = rate
        self.interval = interval
        self.capacity = rate
        self.tokens = rate
        self._clock = clock
        self.last_refill = clock()

    @property
    def wait_time(self) -> float:
        """Time to sleep before retrying on an empty bucket"""
        return self.interval / self.rate

    def _refill(self) -> None:
        now = self._clock()
        if self.tokens >= self.capacity:
            self.last_refill = now
            return

        windows = int((now - self.last_refill) // self.interval)
        if windows > 0:
            self.tokens = min(self.capacity, self.tokens + windows * self.rate)
            self.last_refill = now

    def try_acquire(self) -> bool:
        """Take a token if one is available, without waiting"""
        self._refill()
        if self.tokens > 0:
            self.tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        """Suspend until a token is available, then take it"""
        while not self.try_acquire():
            await asyncio.sleep(self.wait_time)
