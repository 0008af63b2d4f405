"""
Unit tests for tenant health monitoring.
"""

import pytest

from service_core.app.caching.tenant_cache import TenantCache
from service_core.app.monitoring.alert_engine import AlertEngine, setup_default_alerts
from service_core.app.monitoring.health import HealthMonitor
from service_core.app.monitoring.metric_store import MetricStore
from service_core.app.monitoring.models import HealthStatus
from shared.test_helpers import FakeClock


class TestHealthMonitor:
    """Test cases for HealthMonitor."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return MetricStore(clock=clock)

    @pytest.fixture
    def cache(self, store, clock):
        return TenantCache(metric_store=store, clock=clock)

    @pytest.fixture
    def engine(self, store, clock):
        return AlertEngine(metric_store=store, clock=clock)

    @pytest.fixture
    def monitor(self, store, cache, engine, clock):
        return HealthMonitor(metric_store=store, cache=cache, alert_engine=engine, clock=clock)

    async def record_gateway_traffic(self, store, tenant_id, requests, errors):
        for _ in range(requests):
            await store.record(tenant_id, "api.external.request_count", 1)
        for _ in range(errors):
            await store.record(tenant_id, "api.external.error_count", 1)

    @pytest.mark.asyncio
    async def test_healthy_tenant(self, monitor, store, clock):
        await self.record_gateway_traffic(store, "acme", requests=100, errors=1)
        clock.advance(60)

        health = await monitor.check_tenant("acme")

        assert health.status == HealthStatus.HEALTHY
        assert health.error_rate == 1.0
        assert health.uptime_seconds == 60
        assert (await store.latest("acme", "system.error_rate")).value == 1.0
        assert (await store.latest("acme", "system.uptime")).value == 60.0
        assert await store.latest("acme", "system.cache_hit_rate") is None

    @pytest.mark.asyncio
    async def test_error_rate_thresholds(self, monitor, store):
        await self.record_gateway_traffic(store, "warn", requests=10, errors=1)
        await self.record_gateway_traffic(store, "crit", requests=10, errors=3)

        assert (await monitor.check_tenant("warn")).status == HealthStatus.WARNING
        assert (await monitor.check_tenant("crit")).status == HealthStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_old_traffic_leaves_the_window(self, monitor, store, clock):
        await self.record_gateway_traffic(store, "acme", requests=10, errors=10)
        clock.advance(600)

        health = await monitor.check_tenant("acme")

        assert health.error_rate == 0.0
        assert health.status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_cache_hit_rate_feeds_status_and_metric(self, monitor, cache, store):
        await cache.set("acme", "k", 1)
        await cache.get("acme", "k")
        for _ in range(3):
            await cache.get("acme", "missing")

        health = await monitor.check_tenant("acme")

        assert health.cache_hit_rate == 25.0
        assert health.status == HealthStatus.WARNING
        assert (await store.latest("acme", "system.cache_hit_rate")).value == 25.0

    @pytest.mark.asyncio
    async def test_health_metrics_drive_default_alerts(self, monitor, engine, store):
        setup_default_alerts(engine, "acme")
        await self.record_gateway_traffic(store, "acme", requests=10, errors=5)

        health = await monitor.check_tenant("acme")

        firing = engine.list_alerts("acme", firing_only=True)
        assert [alert.metric for alert in firing] == ["system.error_rate"]
        assert health.status == HealthStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_run_once_covers_all_tenants(self, monitor, store, cache):
        await store.record("acme", "jobs", 1)
        await cache.get("globex", "k")

        results = await monitor.run_once()

        assert sorted(results) == ["acme", "globex"]
        assert monitor.get_system_health("acme") is results["acme"]

    @pytest.mark.asyncio
    async def test_dashboard(self, monitor, store):
        await store.record("acme", "api.response_time", 100)
        await store.record("acme", "api.response_time", 300)
        await store.record("acme", "api.request_count", 1)
        await store.record("acme", "api.request_count", 1)
        await store.record("acme", "api.error_count", 1)
        await monitor.check_tenant("acme")

        dashboard = await monitor.dashboard("acme")

        assert dashboard["performance"] == {"avg_response_time": 200.0, "total_requests": 2.0, "total_errors": 1.0}
        assert dashboard["health"]["tenant_id"] == "acme"
        assert dashboard["alerts"] == 0
        assert dashboard["cache"]["requests"] == 0
