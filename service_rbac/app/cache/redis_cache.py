"""
Redis caching layer for the RBAC Service.
"""

import json
from typing import Any, Dict, Optional

import redis.asyncio as redis
from shared.logging import get_logger
from shared.errors import RbacError


class RedisCache:
    """Redis-backed effective-permission cache.

    Values are stored as JSON; TTLs are given in milliseconds. Read and write
    failures are logged and reported as a miss (``None``/``False``) so a
    flaky Redis never turns into a failed authorization.
    """

    def __init__(self, redis_url: str, default_ttl_ms: int = 300_000, key_prefix: str = "rbac:"):
        self.redis_url = redis_url
        self.default_ttl_ms = default_ttl_ms
        self.key_prefix = key_prefix
        self.logger = get_logger("rbac.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise RbacError("REDIS_START_FAILED", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.close()
            self.redis = None
            self.logger.info("Redis cache stopped")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(self._key(key))
            if cached is None:
                return None
            return json.loads(cached)
        except Exception as e:
            self.logger.error("Error reading cache entry", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if self.redis is None:
            return
        ttl_ms = self.default_ttl_ms if ttl is None else ttl
        try:
            await self.redis.set(self._key(key), json.dumps(value), px=ttl_ms)
            self.logger.debug("Cached value", key=key, ttl_ms=ttl_ms)
        except Exception as e:
            self.logger.error("Error writing cache entry", key=key, error=str(e))

    async def delete(self, key: str) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.delete(self._key(key)))
        except Exception as e:
            self.logger.error("Error deleting cache entry", key=key, error=str(e))
            return False

    async def health_check(self) -> Dict[str, Any]:
        """Check Redis connectivity."""
        if self.redis is None:
            return {"status": "unhealthy", "error": "not started"}
        try:
            await self.redis.ping()
            info = await self.redis.info()
            return {
                "status": "healthy",
                "connected_clients": info.get("connected_clients", 0),
                "used_memory_human": info.get("used_memory_human", "unknown"),
            }
        except Exception as e:
            self.logger.error("Redis health check failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}
