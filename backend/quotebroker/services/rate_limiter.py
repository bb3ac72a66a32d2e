"""
Async token-bucket limiter placed in front of every provider REST call.

The bucket holds up to `rate_per_second` tokens and refills continuously, so
at most `rate_per_second` calls start in any one-second window after an idle
period and the sustained rate never exceeds it.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class AsyncRateLimiter:
    def __init__(self, rate_per_second: float, burst_size=None, clock=time.monotonic):
        rate_per_second = max(float(rate_per_second), 0.001)
        self.rate_per_second = rate_per_second
        self.capacity = float(max(burst_size or rate_per_second, 1))
        self.tokens = self.capacity
        self._clock = clock
        self.updated = clock()
        self._lock = asyncio.Lock()
        self.total_acquired = 0
        self.total_waited = 0.0

    def _refill_locked(self) -> None:
        now = self._clock()
        delta = now - self.updated
        if delta <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + delta * self.rate_per_second)
        self.updated = now

    async def acquire(self) -> None:
        """Wait until a token is available, then take it."""
        # Waiters queue on the lock, so tokens are handed out in arrival order
        async with self._lock:
            while True:
                self._refill_locked()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    self.total_acquired += 1
                    return
                needed = (1.0 - self.tokens) / self.rate_per_second
                self.total_waited += needed
                logger.debug(f"Rate limit reached, waiting {needed:.3f}s")
                await asyncio.sleep(needed)

    def penalize(self, seconds: float = 1.0) -> None:
        """Drain tokens after the provider answers 429."""
        if seconds <= 0:
            return
        self._refill_locked()
        penalty = max(self.rate_per_second * seconds, 1.0)
        self.tokens = max(0.0, self.tokens - penalty)

    @asynccontextmanager
    async def limit(self):
        await self.acquire()
        yield

    def get_stats(self) -> dict:
        return {
            "ratePerSecond": self.rate_per_second,
            "capacity": self.capacity,
            "availableTokens": round(self.tokens, 3),
            "totalAcquired": self.total_acquired,
        }
