"""
Token bucket pacing for outbound SMS.

The dispatch loop is sequential; the bucket spaces sends so a large batch
never bursts past the provider's per-second limit. The clock and sleep
functions are injectable so the pacing can be tested without waiting.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class TokenBucketRateLimiter:
    """Allows ``capacity`` immediate sends, then ``rate`` sends per second."""

    def __init__(
        self,
        rate: float,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._last_update = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_update)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
        self._last_update = now

    def try_acquire(self, tokens: int = 1) -> bool:
        self._refill()
        # Tolerate float drift from elapsed * rate
        if self.tokens + _EPSILON >= tokens:
            self.tokens = max(0.0, self.tokens - tokens)
            return True
        return False

    async def acquire(self, tokens: int = 1) -> float:
        """Wait until ``tokens`` are available and take them.

        Returns the total time spent waiting, in seconds.
        """
        if tokens > self.capacity:
            raise ValueError(f"cannot acquire {tokens} tokens from a bucket of {self.capacity}")
        waited = 0.0
        async with self._lock:
            while not self.try_acquire(tokens):
                wait_time = (tokens - self.tokens) / self.rate
                await self._sleep(wait_time)
                waited += wait_time
        if waited:
            logger.debug("rate_limiter: waited %.3fs for %d token(s)", waited, tokens)
        return waited

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self.tokens
