"""Cache port used by the read path and by post-sync invalidation.

Values are JSON-serializable structures. Two adapters:
- RedisCache: shared across API processes and sync workers (production)
- MemoryCache: in-process TTL dict (single-process deployments, tests)
"""

import json
import logging
import time
from typing import Any, Optional, Protocol, runtime_checkable

import redis.asyncio as aioredis

from .schemas import Repository

logger = logging.getLogger("issue_mirror.cache")

__all__ = [
    "CachePort",
    "MemoryCache",
    "RedisCache",
    "create_cache",
    "issue_page_prefix",
    "repo_stat_key",
]

ISSUE_PAGE_KEY_PREFIX = "issues"
REPO_STAT_KEY_PREFIX = "repo_stat"


def issue_page_prefix(repository: Repository) -> str:
    """Prefix shared by every cached page of a repository.

    The trailing separator keeps owner/repo from matching owner/repo-other.
    """
    return f"{ISSUE_PAGE_KEY_PREFIX}:{repository.provider}:{repository.full_name}:"


def repo_stat_key(repository: Repository) -> str:
    return f"{REPO_STAT_KEY_PREFIX}:{repository.provider}:{repository.full_name}"


@runtime_checkable
class CachePort(Protocol):
    """Key-value cache operations required by the mirror."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...


class MemoryCache:
    """In-process cache with optional per-key TTL.

    Values are stored JSON-encoded so callers get the same copy semantics
    as with Redis.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            self._data.pop(key, None)
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._data[key] = (json.dumps(value), expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for key in keys:
            del self._data[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._data)


class RedisCache:
    """Redis-backed cache (redis.asyncio).

    Prefix deletion walks keys with SCAN so it never blocks the server the
    way KEYS would on a large keyspace.
    """

    SCAN_COUNT = 500

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        cached = await self.client.get(key)
        if cached is None:
            return None
        return json.loads(cached)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value)
        if ttl:
            await self.client.setex(key, ttl, payload)
        else:
            await self.client.set(key, payload)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=f"{prefix}*", count=self.SCAN_COUNT):
            batch.append(key)
            if len(batch) >= self.SCAN_COUNT:
                deleted += await self.client.delete(*batch)
                batch.clear()
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted

    async def close(self) -> None:
        await self.client.aclose()


def create_cache(redis_url: str) -> CachePort:
    """Build the configured cache adapter."""
    if redis_url:
        logger.info("cache_backend_selected", extra={"backend": "redis"})
        return RedisCache.from_url(redis_url)
    logger.info("cache_backend_selected", extra={"backend": "memory"})
    return MemoryCache()
