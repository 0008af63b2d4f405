"""
Key/value backends for the tenant cache.

Backends speak plain strings and sets; namespacing, envelopes and logical
expiry live in ``TenantCache``. Backend faults surface as
``CacheUnavailableError``.
"""

import math
from contextlib import asynccontextmanager
from fnmatch import fnmatchcase
from typing import Any, Dict, Optional, Protocol, Set, Tuple

import redis.asyncio as redis

from shared.clock import Clock, SystemClock
from shared.errors import CacheUnavailableError
from shared.logging import get_logger


class KVBackend(Protocol):
    """Minimal KV contract the cache relies on."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def sadd(self, key: str, *members: str) -> None:
        ...

    async def smembers(self, key: str) -> Set[str]:
        ...

    async def delete_pattern(self, pattern: str) -> int:
        ...

    async def ping(self) -> bool:
        ...


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisKVBackend:
    """Redis-backed KV store."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None, scan_count: int = 500):
        self.redis_url = redis_url
        self.scan_count = scan_count
        self.logger = get_logger("core.cache.redis")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except redis.RedisError as e:
            raise CacheUnavailableError(
                f"Redis {operation} failed",
                {"operation": operation, "error": str(e)},
            ) from e

    async def get(self, key: str) -> Optional[Any]:
        async with self._guard("get"):
            client = await self._get_redis()
            return await client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        async with self._guard("set"):
            client = await self._get_redis()
            await client.set(key, value, ex=max(1, math.ceil(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._guard("delete"):
            client = await self._get_redis()
            return int(await client.delete(*keys))

    async def sadd(self, key: str, *members: str) -> None:
        if not members:
            return
        async with self._guard("sadd"):
            client = await self._get_redis()
            await client.sadd(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        async with self._guard("smembers"):
            client = await self._get_redis()
            members = await client.smembers(key)
        return {_text(member) for member in members}

    async def delete_pattern(self, pattern: str) -> int:
        removed = 0
        async with self._guard("delete_pattern"):
            client = await self._get_redis()
            batch = []
            async for key in client.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    removed += int(await client.delete(*batch))
                    batch = []
            if batch:
                removed += int(await client.delete(*batch))
        return removed

    async def ping(self) -> bool:
        async with self._guard("ping"):
            client = await self._get_redis()
            return bool(await client.ping())

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class InMemoryKVBackend:
    """Process-local KV store with clock-driven expiry."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Set[str]] = {}

    def _expire(self, key: str) -> None:
        item = self._values.get(key)
        if item is not None and item[1] is not None and self.clock.now() >= item[1]:
            del self._values[key]

    async def get(self, key: str) -> Optional[Any]:
        self._expire(key)
        item = self._values.get(key)
        return item[0] if item is not None else None

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._values[key] = (value, self.clock.now() + ttl_seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._expire(key)
            if self._values.pop(key, None) is not None:
                removed += 1
            if self._sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def sadd(self, key: str, *members: str) -> None:
        self._sets.setdefault(key, set()).update(members)

    async def smembers(self, key: str) -> Set[str]:
        return set(self._sets.get(key, ()))

    async def delete_pattern(self, pattern: str) -> int:
        keys = [key for key in list(self._values) + list(self._sets) if fnmatchcase(key, pattern)]
        return await self.delete(*keys)

    async def ping(self) -> bool:
        return True

    async def close(self):
        return None

    def keys(self):
        """All live keys; for inspection in tests and admin tooling."""
        for key in list(self._values):
            self._expire(key)
        return sorted(list(self._values) + list(self._sets))
