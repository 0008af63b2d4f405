"""
Unit tests for the tenant cache.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from service_core.app.caching.backends import InMemoryKVBackend
from service_core.app.caching.serialization import CacheEntry, encode_entry
from service_core.app.caching.tenant_cache import TenantCache
from service_core.app.monitoring.metric_store import MetricStore
from shared.errors import CacheUnavailableError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock


class TestTenantCache:
    """Test cases for TenantCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return MetricStore(clock=clock)

    @pytest.fixture
    def backend(self, clock):
        return InMemoryKVBackend(clock)

    @pytest.fixture
    def cache(self, backend, store, clock):
        return TenantCache(backend=backend, metric_store=store, clock=clock, default_ttl_seconds=60)

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        assert await cache.set("acme", "user:1", {"name": "Ada", "roles": ["admin"]}) is True

        assert await cache.get("acme", "user:1") == {"name": "Ada", "roles": ["admin"]}

    @pytest.mark.asyncio
    async def test_keys_are_namespaced_per_tenant(self, cache, backend):
        await cache.set("acme", "k", 1)
        await cache.set("globex", "k", 2)

        assert await cache.get("acme", "k") == 1
        assert await cache.get("globex", "k") == 2
        assert "tenant:acme:k" in backend.keys()
        assert "tenant:globex:k" in backend.keys()

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(self, cache):
        await cache.set("acme", "secret", "value")

        assert await cache.get("globex", "secret") is None

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, cache, clock):
        await cache.set("acme", "session:42", {"uid": 42}, ttl_seconds=5)
        clock.advance(4)
        assert await cache.get("acme", "session:42") == {"uid": 42}

        clock.advance(1)
        assert await cache.get("acme", "session:42") is None

    @pytest.mark.asyncio
    async def test_logical_expiry_when_backend_keeps_value(self, clock):
        entry = CacheEntry(key="k", value="stale", expires_at=clock.now() - 1, created_at=clock.now() - 10)
        backend = MagicMock()
        backend.get = AsyncMock(return_value=encode_entry(entry))
        backend.delete = AsyncMock(return_value=1)
        cache = TenantCache(backend=backend, clock=clock)

        assert await cache.get("acme", "k") is None
        backend.delete.assert_awaited_once_with("tenant:acme:k")

    @pytest.mark.asyncio
    async def test_cached_none_is_distinguishable(self, cache):
        await cache.set("acme", "empty", None)

        entry = await cache.get_entry("acme", "empty")
        assert entry is not None
        assert entry.value is None
        assert await cache.get_entry("acme", "missing") is None
        assert await cache.get("acme", "missing", default="fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_non_positive_ttl_is_rejected(self, cache):
        assert await cache.set("acme", "k", 1, ttl_seconds=0) is False
        assert await cache.set("acme", "k", 1, ttl_seconds=-5) is False
        assert await cache.get("acme", "k") is None

    @pytest.mark.asyncio
    async def test_unserializable_value_is_rejected(self, cache):
        assert await cache.set("acme", "k", {1, 2, 3}) is False
        assert await cache.set("acme", "k", float("nan")) is False

    @pytest.mark.asyncio
    async def test_values_that_would_not_round_trip_are_rejected(self, cache):
        assert await cache.set("acme", "k", {42: "x"}) is False
        assert await cache.set("acme", "k", {"point": (1, 2)}) is False

        assert await cache.get("acme", "k") is None
        assert cache.stats("acme").sets == 0

    @pytest.mark.asyncio
    async def test_invalid_tenant_is_rejected(self, cache):
        assert await cache.set("a:b", "k", 1) is False
        assert await cache.set("", "k", 1) is False
        assert await cache.get("a*", "k") is None
        assert await cache.invalidate_by_tag("a b", "t") == 0
        assert cache.tenants() == []

    @pytest.mark.asyncio
    async def test_invalidate_by_tag(self, cache):
        await cache.set("acme", "a", 1, tags=["prices"])
        await cache.set("acme", "b", 2, tags=["prices", "eu"])
        await cache.set("acme", "c", 3, tags=["eu"])
        await cache.set("globex", "a", 4, tags=["prices"])

        removed = await cache.invalidate_by_tag("acme", "prices")

        assert removed == 2
        assert await cache.get("acme", "a") is None
        assert await cache.get("acme", "b") is None
        assert await cache.get("acme", "c") == 3
        assert await cache.get("globex", "a") == 4
        assert await cache.invalidate_by_tag("acme", "prices") == 0

    @pytest.mark.asyncio
    async def test_invalidate_by_tag_skips_expired_members(self, cache, clock):
        await cache.set("acme", "short", 1, ttl_seconds=1, tags=["t"])
        await cache.set("acme", "long", 2, ttl_seconds=100, tags=["t"])
        clock.advance(5)

        assert await cache.invalidate_by_tag("acme", "t") == 1

    @pytest.mark.asyncio
    async def test_invalidate_tenant(self, cache, backend):
        await cache.set("acme", "a", 1, tags=["x"])
        await cache.set("acme", "b", 2)
        await cache.set("globex", "a", 3, tags=["x"])

        removed = await cache.invalidate_tenant("acme")

        assert removed == 2
        assert await cache.get("acme", "a") is None
        assert await cache.get("globex", "a") == 3
        assert [key for key in backend.keys() if ":acme:" in key] == []

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        await cache.set("acme", "k", 1)

        assert await cache.delete("acme", "k") is True
        assert await cache.get("acme", "k") is None
        assert cache.stats("acme").deletes == 1

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, cache, store):
        await cache.set("acme", "k", 1)
        await cache.get("acme", "k")
        await cache.get("acme", "k")
        await cache.get("acme", "missing")

        stats = cache.stats("acme")
        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.sets == 1
        assert stats.requests == 3
        assert round(stats.hit_rate, 2) == 66.67
        assert cache.tenants() == ["acme"]

        points = await store.query("acme", "cache.response_time")
        assert [p.tags["result"] for p in points] == ["hit", "hit", "miss"]
        assert all(p.value >= 0 for p in points)

    @pytest.mark.asyncio
    async def test_stats_for_unknown_tenant(self, cache):
        stats = cache.stats("nobody")

        assert stats.requests == 0
        assert stats.hit_rate == 0.0
        assert stats.to_dict()["hit_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_backend_outage_degrades_to_miss(self, clock):
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=CacheUnavailableError())
        backend.set = AsyncMock(side_effect=CacheUnavailableError())
        backend.smembers = AsyncMock(side_effect=CacheUnavailableError())
        backend.delete_pattern = AsyncMock(side_effect=CacheUnavailableError())
        backend.ping = AsyncMock(side_effect=CacheUnavailableError())
        metrics = MetricsCollector("core-test")
        cache = TenantCache(backend=backend, clock=clock, metrics=metrics)

        assert await cache.get("acme", "k") is None
        assert await cache.set("acme", "k", 1) is False
        assert await cache.invalidate_by_tag("acme", "t") == 0
        assert await cache.invalidate_tenant("acme") == 0
        assert await cache.is_connected() is False

        stats = cache.stats("acme")
        assert stats.errors == 4
        assert stats.misses == 1
        assert metrics.registry.get_sample_value("cache_backend_errors_total", {"operation": "get"}) == 1.0

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, clock):
        backend = InMemoryKVBackend(clock)
        await backend.set("tenant:acme:k", "not json", 60)
        cache = TenantCache(backend=backend, clock=clock)

        assert await cache.get("acme", "k") is None
        assert cache.stats("acme").misses == 1
        assert cache.stats("acme").errors == 0

    @pytest.mark.asyncio
    async def test_is_connected(self, cache):
        assert await cache.is_connected() is True
