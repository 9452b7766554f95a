"""
Fixed-window rate limiters.

The memory limiter belongs to one app instance; the Redis limiter shares
counters between instances.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds


class MemoryRateLimiter:
    """Fixed window counter per identifier, reset lazily."""

    def __init__(self, limit: int, window: int, clock: Callable[[], float] = time.time, max_keys: int = 10000):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._max_keys = max_keys
        self._windows: Dict[str, Tuple[int, float]] = {}

    async def hit(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        count, started = self._windows.get(identifier, (0, now))
        if now - started >= self.window:
            count, started = 0, now
        count += 1
        self._windows[identifier] = (count, started)
        if len(self._windows) > self._max_keys:
            self._prune(now)
        return RateLimitResult(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=int(started + self.window),
        )

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, started) in self._windows.items() if now - started >= self.window]
        for key in expired:
            del self._windows[key]

    async def close(self) -> None:
        self._windows.clear()


class RedisRateLimiter:
    """Same contract as MemoryRateLimiter with counters kept in Redis."""

    def __init__(self, url: str, limit: int, window: int, prefix: str = "rate_limit"):
        self.limit = limit
        self.window = window
        self.prefix = prefix
        self.redis: Optional[redis.Redis] = redis.from_url(url, encoding="utf-8", decode_responses=True)

    async def hit(self, identifier: str) -> RateLimitResult:
        key = f"{self.prefix}:{identifier}"
        try:
            pipe = self.redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.window, nx=True)
            pipe.ttl(key)
            count, _, ttl = await pipe.execute()
        except redis.RedisError as e:
            # fail open
            logger.error(f"Rate limit check error: {e}")
            return RateLimitResult(True, self.limit, self.limit, int(time.time()) + self.window)
        ttl = ttl if ttl and ttl > 0 else self.window
        return RateLimitResult(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=int(time.time()) + ttl,
        )

    async def close(self) -> None:
        if self.redis:
            await self.redis.aclose()


def build_rate_limiter(backend: str, redis_url: str, limit: int, window: int, prefix: str = "rate_limit"):
    if backend == "redis":
        return RedisRateLimiter(redis_url, limit, window, prefix=prefix)
    return MemoryRateLimiter(limit, window)
