from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis

from routeflow.logging import get_logger

logger = get_logger(__name__)


class RedisTTLCache:
    """Redis-backed TTL cache for route decisions and workflow summaries.

    Mirrors the ``MemoryTTLCache`` interface. Values are stored as JSON with a
    native Redis expiry, so eviction is handled by the server.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "routeflow:",
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        if not self.redis_url:
            return
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[Any]:
        cached = await self.client.get(self._key(key))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            logger.warning("redis_cache_corrupted_entry", key=key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self.client.set(
            self._key(key), json.dumps(value), ex=max(1, int(ttl_seconds))
        )

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def clear(self) -> None:
        async for key in self.client.scan_iter(match=f"{self.key_prefix}*"):
            await self.client.delete(key)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
