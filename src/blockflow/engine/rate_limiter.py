"""Token-bucket rate limiter for blocks that call external APIs.

The bucket holds up to ``max_requests`` tokens and refills continuously at
``max_requests / per_seconds`` tokens per second. Each request consumes one
token; when the bucket is empty ``acquire()`` waits for the next token.
Acquirers are served one at a time (asyncio.Lock), so waiting callers keep
their order.

Example:
    limiter = RateLimiter(max_requests=60, per_seconds=60)  # 60/minute

    async def call_api():
        await limiter.acquire()
        return await client.get(url)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class RateLimiterStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_requests: int = Field(default=0, alias="totalRequests")
    successful_requests: int = Field(default=0, alias="successfulRequests")
    throttled_requests: int = Field(default=0, alias="throttledRequests")
    current_tokens: float = Field(default=0.0, alias="currentTokens")
    wait_time: float = Field(default=0.0, alias="waitTime", description="Seconds spent waiting")


class RateLimiter:
    """Token bucket.

    Args:
        max_requests: Bucket capacity
        per_seconds: Period over which ``max_requests`` tokens refill
        clock: Monotonic time source (injectable for tests)
        sleep: Async sleep (injectable for tests)
    """

    def __init__(
        self,
        max_requests: int,
        per_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be > 0")
        self.max_requests = max_requests
        self.per_seconds = per_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._tokens = float(max_requests)
        self._last_refill = clock()
        self._stats = RateLimiterStats(current_tokens=self._tokens)

    @classmethod
    def per_minute(cls, requests: int) -> RateLimiter:
        return cls(max_requests=requests, per_seconds=60.0)

    @property
    def refill_rate(self) -> float:
        """Tokens per second."""
        return self.max_requests / self.per_seconds

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        self._tokens = min(float(self.max_requests), self._tokens + elapsed * self.refill_rate)
        self._last_refill = now
        self._stats.current_tokens = self._tokens

    def _wait_time(self) -> float:
        self._refill()
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self.refill_rate

    async def acquire(self) -> None:
        """Take one token, waiting for a refill if the bucket is empty."""
        async with self._lock:
            self._stats.total_requests += 1
            wait = self._wait_time()
            if wait > 0:
                self._stats.throttled_requests += 1
                self._stats.wait_time += wait
                logger.debug(f"Rate limit reached, waiting {wait:.3f}s for a token")
                await self._sleep(wait)
                self._refill()
            # A fake clock may not advance during sleep
            self._tokens = max(0.0, self._tokens - 1)
            self._stats.current_tokens = self._tokens
            self._stats.successful_requests += 1

    async def acquire_multiple(self, count: int) -> None:
        """Take ``count`` tokens.

        Raises:
            ValueError: If ``count`` exceeds the bucket capacity
        """
        if count > self.max_requests:
            raise ValueError(f"Cannot acquire {count} tokens, max is {self.max_requests}")
        for _ in range(count):
            await self.acquire()

    def try_acquire(self) -> bool:
        """Take a token only if one is available right now."""
        self._refill()
        self._stats.total_requests += 1
        if self._tokens >= 1:
            self._tokens -= 1
            self._stats.current_tokens = self._tokens
            self._stats.successful_requests += 1
            return True
        self._stats.throttled_requests += 1
        return False

    def stats(self) -> RateLimiterStats:
        self._refill()
        return self._stats.model_copy()

    def reset(self) -> None:
        self._tokens = float(self.max_requests)
        self._last_refill = self._clock()
        self._stats = RateLimiterStats(current_tokens=self._tokens)


__all__ = ["RateLimiter", "RateLimiterStats"]
