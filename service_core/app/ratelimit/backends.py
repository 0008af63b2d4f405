"""
Storage for sliding rate-limit windows.

A window is the set of admission timestamps for one (tenant, API) key.
``check_and_append`` must behave atomically per key: the in-memory backend
serializes callers with a per-key lock, the Redis backend runs a Lua script.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as redis

from shared.logging import get_logger


@dataclass(frozen=True)
class WindowState:
    """In-window admissions after a check."""
    allowed: bool
    count: int
    oldest: Optional[float]


class RateWindowBackend(Protocol):
    async def check_and_append(self, key: str, now: float, window_seconds: float, limit: int) -> WindowState:
        ...

    async def peek(self, key: str, now: float, window_seconds: float) -> WindowState:
        ...

    async def clear(self, key: str) -> None:
        ...


class InMemoryRateWindowBackend:
    """Single-instance backend.

    Keys share a fixed pool of locks, so lock memory does not grow with the
    number of keys. Emptied windows are dropped.
    """

    def __init__(self, lock_stripes: int = 64):
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be at least 1")
        self._windows: Dict[str, List[float]] = {}
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(lock_stripes)]

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def _store(self, key: str, timestamps: List[float]) -> None:
        if timestamps:
            self._windows[key] = timestamps
        else:
            self._windows.pop(key, None)

    @staticmethod
    def _in_window(timestamps: List[float], now: float, window_seconds: float) -> List[float]:
        return [ts for ts in timestamps if now - ts < window_seconds]

    async def check_and_append(self, key: str, now: float, window_seconds: float, limit: int) -> WindowState:
        async with self._lock_for(key):
            timestamps = self._in_window(self._windows.get(key, []), now, window_seconds)
            allowed = len(timestamps) < limit
            if allowed:
                timestamps.append(now)
            self._store(key, timestamps)
            return WindowState(allowed=allowed, count=len(timestamps), oldest=min(timestamps) if timestamps else None)

    async def peek(self, key: str, now: float, window_seconds: float) -> WindowState:
        timestamps = self._in_window(self._windows.get(key, []), now, window_seconds)
        if not timestamps:
            self._windows.pop(key, None)
        return WindowState(allowed=True, count=len(timestamps), oldest=min(timestamps) if timestamps else None)

    async def clear(self, key: str) -> None:
        async with self._lock_for(key):
            self._windows.pop(key, None)


_CHECK_AND_APPEND_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[2])
local count = redis.call('ZCARD', KEYS[1])
local allowed = 0
if count < tonumber(ARGV[3]) then
    redis.call('ZADD', KEYS[1], ARGV[1], ARGV[4])
    count = count + 1
    allowed = 1
end
redis.call('PEXPIRE', KEYS[1], ARGV[5])
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
local oldest_score = ''
if oldest[2] then
    oldest_score = oldest[2]
end
return {allowed, count, oldest_score}
"""


def _score(value: Any) -> Optional[float]:
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    if value in (None, ""):
        return None
    return float(value)


class RedisRateWindowBackend:
    """Shared backend for multi-instance deployments (one sorted set per key)."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("core.rate_limiter.redis")
        self._redis: Optional[redis.Redis] = client
        self._script = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def check_and_append(self, key: str, now: float, window_seconds: float, limit: int) -> WindowState:
        client = await self._get_redis()
        if self._script is None:
            self._script = client.register_script(_CHECK_AND_APPEND_SCRIPT)

        cutoff = now - window_seconds
        member = f"{now!r}:{uuid.uuid4().hex[:12]}"
        ttl_ms = max(1, int(window_seconds * 1000))
        allowed, count, oldest = await self._script(
            keys=[key],
            args=[repr(now), repr(cutoff), limit, member, ttl_ms],
        )
        return WindowState(allowed=bool(int(allowed)), count=int(count), oldest=_score(oldest))

    async def peek(self, key: str, now: float, window_seconds: float) -> WindowState:
        client = await self._get_redis()
        lower = f"({now - window_seconds!r}"
        count = await client.zcount(key, lower, "+inf")
        oldest = await client.zrangebyscore(key, lower, "+inf", start=0, num=1, withscores=True)
        return WindowState(
            allowed=True,
            count=int(count),
            oldest=float(oldest[0][1]) if oldest else None,
        )

    async def clear(self, key: str) -> None:
        client = await self._get_redis()
        await client.delete(key)

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
