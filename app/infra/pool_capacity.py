"""
Shared pool capacity counter.

The number of occupied shared-runtime slots is a single Redis integer shared by
every control-plane replica. Reservations are INCR-then-check and releases are
a Lua script that never goes below zero, so no read-then-write race exists.
"""

from __future__ import annotations

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.exceptions import InfraUnavailable
from app.infra.base import with_timeout

logger = logging.getLogger(__name__)

ADAPTER = "pool_capacity"

SLOTS_KEY = "rp9:shared_pool:slots_in_use"

RELEASE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""


class PoolExhausted(InfraUnavailable):
    def __init__(self, capacity: int):
        super().__init__(ADAPTER, f"Shared pool is full ({capacity} slots)", details={"capacity": capacity})


class RedisPoolCapacity:
    def __init__(self, redis_url: str, capacity: int):
        self.capacity = capacity
        self._redis = redis.from_url(redis_url, decode_responses=True)
        self._release = self._redis.register_script(RELEASE_SCRIPT)

    async def _call(self, operation: str, coro):
        try:
            return await with_timeout(ADAPTER, operation, coro)
        except RedisError as e:
            logger.error("Redis %s failed: %s", operation, e)
            raise InfraUnavailable(ADAPTER, f"Pool counter {operation} failed: {e}") from e

    async def acquire(self) -> int:
        """Take one slot; raises PoolExhausted when the pool is full."""
        in_use = await self._call("acquire", self._redis.incr(SLOTS_KEY))
        if in_use > self.capacity:
            await self._call("rollback", self._redis.decr(SLOTS_KEY))
            logger.warning("Shared pool exhausted: capacity=%d", self.capacity)
            raise PoolExhausted(self.capacity)
        return in_use

    async def release(self) -> int:
        return int(await self._call("release", self._release(keys=[SLOTS_KEY])))

    async def in_use(self) -> int:
        value = await self._call("in_use", self._redis.get(SLOTS_KEY))
        return int(value or 0)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._redis.ping()))

    async def aclose(self) -> None:
        await self._redis.aclose()
