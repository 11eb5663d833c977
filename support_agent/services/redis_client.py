# support_agent/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from support_agent.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Delete the key only if it still holds our token, so an expired lease
# re-acquired by another run is never released by the previous holder.
_RELEASE_IF_OWNER = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisClient:
    """Pooled async Redis client used for idempotency leases and completion markers."""

    def __init__(self, url: str, max_connections: int = 20):
        self._url = url
        self._max_connections = max_connections
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=self._max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:40], error=str(e))
            return None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        try:
            await self._ensure_initialized()
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:40], error=str(e))
            return False

    async def acquire_lock(self, key: str, token: str, ttl_ms: int) -> bool:
        """
        Atomically claim `key` for `token` if nobody holds it (SET NX PX).

        Returns False when the key is held or Redis is unreachable; callers
        treat both as "do not proceed".
        """
        try:
            await self._ensure_initialized()
            result = await self.client.set(key, token, nx=True, px=ttl_ms)
            return bool(result)
        except Exception as e:
            logger.error("Redis lock acquire failed", key=key[:40], error=str(e))
            return False

    async def release_lock(self, key: str, token: str) -> bool:
        """Release `key` only if it is still held by `token`."""
        try:
            await self._ensure_initialized()
            result = await self.client.eval(_RELEASE_IF_OWNER, 1, key, token)
            return bool(result)
        except Exception as e:
            logger.error("Redis lock release failed", key=key[:40], error=str(e))
            return False
