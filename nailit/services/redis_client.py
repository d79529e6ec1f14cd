"""
Shared async Redis client.

Ingestion keeps only small string values here (per-mailbox history
cursors), so the client exposes get/set/delete, an atomic numeric
set_max and a ping for health checks.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from nailit.config import settings
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Non-numeric stored values count as 0
SET_MAX_LUA_SCRIPT = """
local current = redis.call("GET", KEYS[1])
if current and (tonumber(current) or 0) >= tonumber(ARGV[1]) then
    return current
end
redis.call("SET", KEYS[1], ARGV[1])
return ARGV[1]
"""


class FastRedisClient:
    def __init__(self, url: str | None = None):
        self.url = url
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        url = self.url or settings.REDIS_URL
        # Strip credentials before logging
        host = url.rsplit("@", 1)[-1]
        self.pool = ConnectionPool.from_url(
            url,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=True,
            retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            health_check_interval=30,
            decode_responses=True,
        )
        self.client = redis.Redis(connection_pool=self.pool)

        try:
            await self.client.ping()
        except redis.RedisError as e:
            logger.error("Redis unreachable", host=host, error=str(e))
            await self.close()
            raise RuntimeError("Redis initialization failed") from e

        self._initialized = True
        logger.info("Redis client ready", host=host, max_connections=settings.REDIS_MAX_CONNECTIONS)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
        if self.pool is not None:
            await self.pool.disconnect()
        self.client = None
        self.pool = None
        self._initialized = False
        logger.info("Redis client closed")

    async def _client(self) -> redis.Redis:
        if not self._initialized:
            logger.warning("Redis used before startup, connecting lazily")
            await self.initialize()
        return self.client

    async def ping(self) -> bool:
        """True when Redis answers; never raises."""
        try:
            client = await self._client()
            return bool(await client.ping())
        except (redis.RedisError, RuntimeError) as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        # Errors propagate: a missing cursor and an unreachable Redis mean different things
        client = await self._client()
        return await client.get(key) or None

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        client = await self._client()
        return bool(await client.set(key, value, ex=ttl_s or None))

    async def delete(self, key: str) -> bool:
        client = await self._client()
        return await client.delete(key) > 0

    async def set_max(self, key: str, value: int | str) -> str:
        """Store value only if it is numerically greater than the current one; returns the stored value."""
        client = await self._client()
        return await client.eval(SET_MAX_LUA_SCRIPT, 1, key, str(value))


fast_redis = FastRedisClient()
