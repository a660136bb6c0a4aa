# mmbot/execution/rate_limiter.py
import asyncio
import time
from collections.abc import Awaitable, Callable


class TokenBucket:
    """Async token bucket: ``rate`` tokens per second, at most ``capacity`` banked"""

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0 or capacity < 1:
            raise ValueError("rate must be positive and capacity at least 1")
        self.rate = rate
        self.capacity = capacity
        self.clock = clock
        self.sleep = sleep
        self.tokens = float(capacity)
        self.updated_at = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self.updated_at
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.updated_at = now

    async def acquire(self) -> None:
        # the lock keeps waiters in FIFO order
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= 1:
                    self.tokens -= 1
                    return
                await self.sleep((1 - self.tokens) / self.rate)


class RateLimiterRegistry:
    """One bucket per API key, shared by every strategy using that key"""

    def __init__(self, rate: float, capacity: int, **bucket_kwargs):
        self.rate = rate
        self.capacity = capacity
        self._bucket_kwargs = bucket_kwargs
        self._buckets: dict[str, TokenBucket] = {}

    def get(self, api_key: str) -> TokenBucket:
        bucket = self._buckets.get(api_key)
        if bucket is None:
            bucket = TokenBucket(self.rate, self.capacity, **self._bucket_kwargs)
            self._buckets[api_key] = bucket
        return bucket
