"""
Rate limiting for story generation.

Two rules per key: at most max_requests per sliding window, and a
minimum interval between consecutive requests. Limiter state is
advisory only; credit balances are enforced by the database.

The in-memory limiter is per process. Use RedisRateLimiter when the
API runs on more than one instance.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, NamedTuple, Optional

import redis.asyncio as aioredis

from config.settings import (
    RATE_LIMIT_CLEANUP_THRESHOLD,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_MIN_INTERVAL_SECONDS,
    RATE_LIMIT_WINDOW_SECONDS,
)

logger = logging.getLogger(__name__)


class RateLimitDecision(NamedTuple):
    """Result of a rate limit check."""
    allowed: bool
    retry_after: int = 0  # seconds
    remaining: int = 0


class RateLimiter(ABC):
    """check() both tests and consumes one request for the key."""

    @abstractmethod
    async def check(self, key: str) -> RateLimitDecision:
        pass


class InMemoryRateLimiter(RateLimiter):
    """Sliding log of request timestamps per key."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        min_interval_seconds: float = RATE_LIMIT_MIN_INTERVAL_SECONDS,
        cleanup_threshold: int = RATE_LIMIT_CLEANUP_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self.cleanup_threshold = cleanup_threshold
        self._clock = clock
        self._entries: dict[str, deque] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _cleanup(self, now: float) -> None:
        if len(self._entries) <= self.cleanup_threshold:
            return
        cutoff = now - self.window_seconds * 2
        stale = [key for key, stamps in self._entries.items() if not stamps or stamps[-1] < cutoff]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Rate limiter dropped {len(stale)} stale keys")

    async def check(self, key: str) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            self._cleanup(now)
            stamps = self._entries.setdefault(key, deque())

            while stamps and stamps[0] <= now - self.window_seconds:
                stamps.popleft()

            if stamps:
                since_last = now - stamps[-1]
                if since_last < self.min_interval_seconds:
                    return RateLimitDecision(
                        allowed=False,
                        retry_after=max(math.ceil(self.min_interval_seconds - since_last), 1),
                        remaining=max(self.max_requests - len(stamps), 0),
                    )

            if len(stamps) >= self.max_requests:
                return RateLimitDecision(
                    allowed=False,
                    retry_after=max(math.ceil(stamps[0] + self.window_seconds - now), 1),
                    remaining=0,
                )

            stamps.append(now)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - len(stamps))


class RedisRateLimiter(RateLimiter):
    """
    Shared limiter backed by Redis.

    Sliding log: ratelimit:{key} is a sorted set of request timestamps.
    Interval guard: ratelimit:last:{key} set with NX and a short expiry.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        min_interval_seconds: int = RATE_LIMIT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis
        self.max_requests = max_requests
        self.window_seconds = int(window_seconds)
        self.min_interval_seconds = int(min_interval_seconds)
        self._clock = clock

    async def check(self, key: str) -> RateLimitDecision:
        now = self._clock()

        if self.min_interval_seconds > 0:
            acquired = await self._redis.set(f"ratelimit:last:{key}", "1", nx=True, ex=self.min_interval_seconds)
            if not acquired:
                ttl = await self._redis.ttl(f"ratelimit:last:{key}")
                return RateLimitDecision(allowed=False, retry_after=max(int(ttl), 1), remaining=0)

        log_key = f"ratelimit:{key}"
        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(log_key, 0, now - self.window_seconds)
        pipe.zrange(log_key, 0, 0, withscores=True)
        pipe.zcard(log_key)
        _, oldest, count = await pipe.execute()

        if count >= self.max_requests:
            oldest_at = oldest[0][1] if oldest else now
            return RateLimitDecision(
                allowed=False,
                retry_after=max(math.ceil(oldest_at + self.window_seconds - now), 1),
                remaining=0,
            )

        pipe = self._redis.pipeline()
        pipe.zadd(log_key, {f"{now:.6f}": now})
        pipe.expire(log_key, self.window_seconds)
        await pipe.execute()
        return RateLimitDecision(allowed=True, remaining=self.max_requests - count - 1)


def build_rate_limiter(backend: str, redis: Optional[aioredis.Redis] = None) -> RateLimiter:
    if backend == "redis":
        if redis is None:
            raise ValueError("Redis rate limiter needs a Redis client")
        return RedisRateLimiter(redis)
    return InMemoryRateLimiter()
