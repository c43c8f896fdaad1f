"""Cache store implementations for fragcache.

The store holds rendered fragment content. It is driven entirely by explicit
invalidation: entries are written without a TTL and removed only when a
fragment is destroyed.

- RedisCacheStore: shared store for multi-instance deployments
- MemoryCacheStore: in-process store for single-instance use and tests
"""

from __future__ import annotations

import fnmatch
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, cast

import redis.asyncio as redis

from fragcache.config import settings

if TYPE_CHECKING:
    from redis.asyncio import Redis

# Module-level connection pool
_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Get or create the Redis client.

    Uses connection pooling for efficient connection management.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            encoding="utf-8",
            decode_responses=False,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


class CacheStore(ABC):
    """Abstract key/value store for rendered fragment content."""

    @abstractmethod
    async def read(self, key: str) -> bytes | None:
        """Return the cached value, or None if absent."""

    @abstractmethod
    async def write(self, key: str, value: bytes | str) -> None:
        """Store a value under key."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a single key. Returns True if it existed."""

    @abstractmethod
    async def delete_matching(self, pattern: str) -> int:
        """Delete every key matching a glob-style pattern.

        Returns the number of keys deleted.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether a key is present."""


class RedisCacheStore(CacheStore):
    """Cache store backed by Redis."""

    def __init__(self, client: Redis):
        self.client = client

    async def read(self, key: str) -> bytes | None:
        return cast(bytes | None, await self.client.get(key))

    async def write(self, key: str, value: bytes | str) -> None:
        await self.client.set(key, value)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def delete_matching(self, pattern: str) -> int:
        deleted = 0

        # Use SCAN to avoid blocking on large keyspaces
        async for key in self.client.scan_iter(match=pattern):
            await self.client.delete(key)
            deleted += 1

        return deleted

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))


class MemoryCacheStore(CacheStore):
    """In-process cache store.

    Suitable for single-instance deployments and tests.
    """

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def read(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def write(self, key: str, value: bytes | str) -> None:
        self._data[key] = value.encode() if isinstance(value, str) else value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def delete_matching(self, pattern: str) -> int:
        matched = [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._data[key]
        return len(matched)

    async def exists(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        """All keys currently stored."""
        return list(self._data)
