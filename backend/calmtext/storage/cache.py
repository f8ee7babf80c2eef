"""
CalmText - Fast Cache Tier

TTL-bound key-value cache that holds serialized sessions under
`session:<id>`.

Implementations:
    - InMemoryCache: process-local dict with expiry (development/testing)
    - RedisCache: redis.asyncio with a shared connection pool

Both raise CacheError on failure; callers decide whether to degrade.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError

from calmtext.core.exceptions import CacheError

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


def session_key(user_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{user_id}"


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class FastCache(Protocol):
    """Protocol for the fast cache tier."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the cached value, or None on miss or expiry."""
        ...

    @abstractmethod
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryCache:
    """
    Process-local cache with per-key expiry.

    Expired keys are dropped lazily on read.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._data[key]
                return None
            return value

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._data[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


# =============================================================================
# Redis Implementation
# =============================================================================

class RedisCache:
    """Redis-backed cache sharing one connection pool across the process."""

    def __init__(
        self,
        redis_url: str,
        socket_timeout: float = 5.0,
        max_connections: int = 20,
    ):
        self._pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            retry_on_timeout=True,
            decode_responses=True,
        )
        self._client = redis.Redis(connection_pool=self._pool)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise CacheError(f"Redis GET failed: {type(e).__name__}") from e

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.setex(key, ttl_seconds, value)
        except RedisError as e:
            raise CacheError(f"Redis SETEX failed: {type(e).__name__}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise CacheError(f"Redis DEL failed: {type(e).__name__}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning("Redis ping failed: %s", type(e).__name__)
            return False

    async def close(self) -> None:
        await self._client.aclose()
        await self._pool.disconnect()
