"""
Redis balance cache.

Non-authoritative: the users table is the source of truth. Entries
are dropped after every credit mutation and repopulated on read.
A small circuit breaker stops hammering Redis when it is down; the
service then reads straight from the database (degraded mode).
"""

import logging
import time
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

REDIS_CB_THRESHOLD = 5
REDIS_CB_RECOVERY_TIME = 60  # Seconds
BALANCE_TTL_SECONDS = 3600


class BalanceCache:
    """Cache of user credit balances keyed as balance:{user_id}."""

    def __init__(
        self,
        redis: Optional[aioredis.Redis] = None,
        ttl: int = BALANCE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._redis = redis
        self.ttl = ttl
        self._clock = clock
        self._cb_state = {"status": "CLOSED", "last_failure": 0.0, "failure_count": 0}

    @staticmethod
    def _key(user_id: str) -> str:
        return f"balance:{user_id}"

    @property
    def circuit_status(self) -> str:
        return self._cb_state["status"]

    def _is_redis_available(self) -> bool:
        """Check if the circuit breaker allows Redis calls."""
        if self._redis is None:
            return False
        if self._cb_state["status"] == "OPEN":
            if (self._clock() - self._cb_state["last_failure"]) > REDIS_CB_RECOVERY_TIME:
                self._cb_state["status"] = "HALF_OPEN"
                return True
            return False
        return True

    def _redis_failure(self, e: Exception) -> None:
        """Record a Redis failure and trip the breaker past the threshold."""
        from api.services.metrics import redis_circuit_state

        self._cb_state["failure_count"] += 1
        self._cb_state["last_failure"] = self._clock()
        if self._cb_state["status"] == "HALF_OPEN" or self._cb_state["failure_count"] >= REDIS_CB_THRESHOLD:
            if self._cb_state["status"] != "OPEN":
                logger.error(f"Redis circuit breaker OPEN after {self._cb_state['failure_count']} failures: {e}")
            self._cb_state["status"] = "OPEN"
            redis_circuit_state.set(1)
        else:
            logger.warning(f"Redis balance cache error: {e}")

    def _redis_success(self) -> None:
        from api.services.metrics import redis_circuit_state

        self._cb_state["failure_count"] = 0
        self._cb_state["status"] = "CLOSED"
        redis_circuit_state.set(0)

    async def get(self, user_id: str) -> Optional[int]:
        if not self._is_redis_available():
            return None
        try:
            value = await self._redis.get(self._key(user_id))
            self._redis_success()
        except RedisError as e:
            self._redis_failure(e)
            return None
        if value is None:
            return None
        return int(value.decode() if isinstance(value, bytes) else value)

    async def set(self, user_id: str, balance: int) -> None:
        if not self._is_redis_available():
            return
        try:
            await self._redis.set(self._key(user_id), str(balance), ex=self.ttl)
            self._redis_success()
        except RedisError as e:
            self._redis_failure(e)

    async def invalidate(self, user_id: str) -> None:
        if not self._is_redis_available():
            return
        try:
            await self._redis.delete(self._key(user_id))
            self._redis_success()
        except RedisError as e:
            self._redis_failure(e)

    async def get_or_load(self, user_id: str, loader: Callable[[str], Awaitable[Optional[int]]]) -> Optional[int]:
        """Cached balance, falling back to loader (the database) on a miss or outage."""
        failures = self._cb_state["failure_count"]
        cached = await self.get(user_id)
        if cached is not None:
            return cached
        read_failed = self._cb_state["failure_count"] > failures
        balance = await loader(user_id)
        # A successful write after a failed read would reset the breaker
        if balance is not None and not read_failed:
            await self.set(user_id, balance)
        return balance
