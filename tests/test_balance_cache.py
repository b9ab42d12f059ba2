"""Tests for balance_cache.py - Redis cache with circuit breaker fallback."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from api.services.balance_cache import REDIS_CB_RECOVERY_TIME, REDIS_CB_THRESHOLD, BalanceCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def redis():
    client = AsyncMock()
    client.get.return_value = None
    return client


class TestBalanceCache:
    @pytest.mark.asyncio
    async def test_hit(self, redis):
        redis.get.return_value = "12"
        loader = AsyncMock(return_value=99)

        assert await BalanceCache(redis).get_or_load("user-1", loader) == 12
        loader.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_miss_loads_and_stores(self, redis):
        loader = AsyncMock(return_value=7)

        assert await BalanceCache(redis, ttl=30).get_or_load("user-1", loader) == 7
        redis.set.assert_awaited_once_with("balance:user-1", "7", ex=30)

    @pytest.mark.asyncio
    async def test_unknown_user_not_cached(self, redis):
        loader = AsyncMock(return_value=None)

        assert await BalanceCache(redis).get_or_load("ghost", loader) is None
        redis.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidate(self, redis):
        await BalanceCache(redis).invalidate("user-1")
        redis.delete.assert_awaited_once_with("balance:user-1")

    @pytest.mark.asyncio
    async def test_no_redis_reads_database(self):
        loader = AsyncMock(return_value=5)
        assert await BalanceCache(None).get_or_load("user-1", loader) == 5


class TestCircuitBreaker:
    """Redis outages degrade to database reads."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, redis):
        redis.get.side_effect = RedisConnectionError("down")
        cache = BalanceCache(redis, clock=FakeClock())
        loader = AsyncMock(return_value=4)

        for _ in range(REDIS_CB_THRESHOLD):
            assert await cache.get_or_load("user-1", loader) == 4

        assert cache.circuit_status == "OPEN"
        redis.set.assert_not_awaited()
        calls = redis.get.await_count
        assert await cache.get_or_load("user-1", loader) == 4
        assert redis.get.await_count == calls

    @pytest.mark.asyncio
    async def test_half_open_recovers(self, redis):
        clock = FakeClock()
        redis.get.side_effect = RedisConnectionError("down")
        cache = BalanceCache(redis, clock=clock)
        for _ in range(REDIS_CB_THRESHOLD):
            await cache.get("user-1")
        assert cache.circuit_status == "OPEN"

        clock.now += REDIS_CB_RECOVERY_TIME + 1
        redis.get.side_effect = None
        redis.get.return_value = "3"

        assert await cache.get("user-1") == 3
        assert cache.circuit_status == "CLOSED"

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, redis):
        clock = FakeClock()
        redis.get.side_effect = RedisConnectionError("down")
        cache = BalanceCache(redis, clock=clock)
        for _ in range(REDIS_CB_THRESHOLD):
            await cache.get("user-1")

        clock.now += REDIS_CB_RECOVERY_TIME + 1
        assert await cache.get("user-1") is None
        assert cache.circuit_status == "OPEN"
