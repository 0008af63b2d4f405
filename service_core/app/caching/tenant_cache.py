"""
Tenant-scoped cache with tag-based bulk invalidation.

Keys live under ``tenant:<tenant>:<key>``; each tag keeps a set of raw keys
under ``tags:<tenant>:<tag>``. The cache is best-effort: lookups degrade to
misses and writes to ``False`` when the backend is unavailable, and nothing
here raises to callers.

Tag invalidation reads the member set and then deletes, so a ``set`` that
lands in between can survive the invalidation. Tag sets carry no TTL and may
list keys that already expired; those are skipped when counting.
"""

import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from shared.clock import Clock, SystemClock
from shared.errors import SerializationError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tenancy import validate_tenant_id

from service_core.app.caching.backends import InMemoryKVBackend, KVBackend
from service_core.app.caching.serialization import CacheEntry, decode_entry, encode_entry
from service_core.app.monitoring.metric_store import MetricStore

DEFAULT_TTL_SECONDS = 3600
RESPONSE_TIME_METRIC = "cache.response_time"


@dataclass
class CacheStats:
    """Per-tenant cache counters."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    invalidations: int = 0
    errors: int = 0
    total_response_time_ms: float = 0.0

    @property
    def requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Hit percentage (0-100)."""
        if not self.requests:
            return 0.0
        return self.hits / self.requests * 100

    @property
    def avg_response_time_ms(self) -> float:
        if not self.requests:
            return 0.0
        return self.total_response_time_ms / self.requests

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["requests"] = self.requests
        data["hit_rate"] = round(self.hit_rate, 2)
        data["avg_response_time_ms"] = round(self.avg_response_time_ms, 3)
        return data


class TenantCache:
    """Namespaced, TTL-bound cache emitting hit/miss metrics."""

    def __init__(
        self,
        backend: Optional[KVBackend] = None,
        metric_store: Optional[MetricStore] = None,
        clock: Optional[Clock] = None,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.clock = clock or SystemClock()
        self.backend = backend or InMemoryKVBackend(self.clock)
        self.metric_store = metric_store
        self.default_ttl_seconds = default_ttl_seconds
        self.metrics = metrics
        self.logger = get_logger("core.cache")
        self._stats: Dict[str, CacheStats] = {}

    @staticmethod
    def data_key(tenant_id: str, key: str) -> str:
        return f"tenant:{tenant_id}:{key}"

    @staticmethod
    def tag_key(tenant_id: str, tag: str) -> str:
        return f"tags:{tenant_id}:{tag}"

    def _tenant_ok(self, tenant_id: str, operation: str) -> bool:
        try:
            validate_tenant_id(tenant_id)
        except ValidationError as e:
            self.logger.warning("Rejected cache operation for invalid tenant", operation=operation, error=e.message)
            return False
        return True

    def _stats_for(self, tenant_id: str) -> CacheStats:
        stats = self._stats.get(tenant_id)
        if stats is None:
            stats = self._stats[tenant_id] = CacheStats()
        return stats

    def _backend_failed(self, tenant_id: str, operation: str, error: Exception):
        self._stats_for(tenant_id).errors += 1
        if self.metrics:
            self.metrics.increment_counter("cache_backend_errors_total", operation=operation)
        self.logger.warning("Cache backend unavailable", operation=operation, tenant_id=tenant_id, error=str(error))

    async def get(self, tenant_id: str, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on miss."""
        entry = await self.get_entry(tenant_id, key)
        if entry is None:
            return default
        return entry.value

    async def get_entry(self, tenant_id: str, key: str) -> Optional[CacheEntry]:
        """Return the live entry, distinguishing a cached ``None`` from a miss."""
        if not self._tenant_ok(tenant_id, "get"):
            return None

        started = time.perf_counter()
        raw_key = self.data_key(tenant_id, key)
        entry = None
        try:
            raw = await self.backend.get(raw_key)
            if raw is not None:
                entry = decode_entry(key, raw)
        except SerializationError as e:
            self.logger.warning("Discarding undecodable cache entry", tenant_id=tenant_id, key=key, error=e.message)
        except Exception as e:
            self._backend_failed(tenant_id, "get", e)

        if entry is not None and entry.is_expired(self.clock.now()):
            entry = None
            try:
                await self.backend.delete(raw_key)
            except Exception as e:
                self._backend_failed(tenant_id, "expire", e)

        elapsed_ms = (time.perf_counter() - started) * 1000
        await self._record_lookup(tenant_id, entry is not None, elapsed_ms)
        return entry

    async def _record_lookup(self, tenant_id: str, hit: bool, elapsed_ms: float):
        stats = self._stats_for(tenant_id)
        if hit:
            stats.hits += 1
        else:
            stats.misses += 1
        stats.total_response_time_ms += elapsed_ms

        result = "hit" if hit else "miss"
        if self.metrics:
            self.metrics.increment_counter("cache_requests_total", result=result)
        if self.metric_store is not None:
            await self.metric_store.record(tenant_id, RESPONSE_TIME_METRIC, elapsed_ms, {"result": result})

    async def set(
        self,
        tenant_id: str,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """Write ``value`` with a TTL and add ``key`` to each tag set."""
        if not self._tenant_ok(tenant_id, "set"):
            return False

        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            self.logger.warning("Rejected cache write with non-positive TTL", tenant_id=tenant_id, key=key, ttl=ttl)
            return False

        tag_list = sorted(set(tags or ()))
        now = self.clock.now()
        entry = CacheEntry(key=key, value=value, expires_at=now + ttl, tags=tag_list, created_at=now)
        try:
            payload = encode_entry(entry)
        except SerializationError as e:
            self.logger.warning("Cannot cache unserializable value", tenant_id=tenant_id, key=key, error=e.message)
            return False

        try:
            await self.backend.set(self.data_key(tenant_id, key), payload, ttl)
            for tag in tag_list:
                await self.backend.sadd(self.tag_key(tenant_id, tag), key)
        except Exception as e:
            self._backend_failed(tenant_id, "set", e)
            return False

        self._stats_for(tenant_id).sets += 1
        self.logger.debug("Cached value", tenant_id=tenant_id, key=key, ttl=ttl, tags=tag_list)
        return True

    async def delete(self, tenant_id: str, key: str) -> bool:
        if not self._tenant_ok(tenant_id, "delete"):
            return False
        try:
            await self.backend.delete(self.data_key(tenant_id, key))
        except Exception as e:
            self._backend_failed(tenant_id, "delete", e)
            return False
        self._stats_for(tenant_id).deletes += 1
        return True

    async def invalidate_by_tag(self, tenant_id: str, tag: str) -> int:
        """Delete every key carrying ``tag``. Returns the number of keys removed."""
        if not self._tenant_ok(tenant_id, "invalidate_by_tag"):
            return 0

        tag_key = self.tag_key(tenant_id, tag)
        try:
            members = await self.backend.smembers(tag_key)
            keys = [self.data_key(tenant_id, member) for member in sorted(members)]
            removed = await self.backend.delete(*keys) if keys else 0
            await self.backend.delete(tag_key)
        except Exception as e:
            self._backend_failed(tenant_id, "invalidate_by_tag", e)
            return 0

        self._stats_for(tenant_id).invalidations += removed
        if self.metrics and removed:
            self.metrics.increment_counter("cache_invalidations_total", removed, kind="tag")
        self.logger.info("Invalidated cache tag", tenant_id=tenant_id, tag=tag, removed=removed)
        return removed

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Flush every cache key and tag set of the tenant. Returns data keys removed."""
        if not self._tenant_ok(tenant_id, "invalidate_tenant"):
            return 0

        try:
            removed = await self.backend.delete_pattern(self.data_key(tenant_id, "*"))
            await self.backend.delete_pattern(self.tag_key(tenant_id, "*"))
        except Exception as e:
            self._backend_failed(tenant_id, "invalidate_tenant", e)
            return 0

        self._stats_for(tenant_id).invalidations += removed
        if self.metrics and removed:
            self.metrics.increment_counter("cache_invalidations_total", removed, kind="tenant")
        self.logger.info("Invalidated tenant cache", tenant_id=tenant_id, removed=removed)
        return removed

    def stats(self, tenant_id: str) -> CacheStats:
        return self._stats.get(tenant_id) or CacheStats()

    def all_stats(self) -> Dict[str, CacheStats]:
        return dict(self._stats)

    def tenants(self) -> List[str]:
        return sorted(self._stats)

    async def is_connected(self) -> bool:
        try:
            return await self.backend.ping()
        except Exception as e:
            self.logger.warning("Cache backend ping failed", error=str(e))
            return False
