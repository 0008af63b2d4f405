"""
Periodic per-tenant health snapshots.

Each run folds cache statistics and recent gateway traffic into ``system.*``
metrics, which the default alerts watch, and keeps the latest snapshot per
tenant for the dashboard.
"""

from typing import Any, Dict, List, Optional

from shared.clock import Clock, SystemClock
from shared.logging import get_logger

from service_core.app.caching.tenant_cache import TenantCache
from service_core.app.monitoring.alert_engine import AlertEngine
from service_core.app.monitoring.metric_store import MetricStore
from service_core.app.monitoring.models import HealthStatus, SystemHealth, TimeRange

GATEWAY_REQUEST_METRIC = "api.external.request_count"
GATEWAY_ERROR_METRIC = "api.external.error_count"

# Thresholds are percentages
CACHE_HIT_RATE_WARNING = 50.0
CACHE_HIT_RATE_CRITICAL = 20.0
ERROR_RATE_WARNING = 5.0
ERROR_RATE_CRITICAL = 20.0


class HealthMonitor:
    """Computes and records tenant health."""

    def __init__(
        self,
        metric_store: MetricStore,
        cache: Optional[TenantCache] = None,
        alert_engine: Optional[AlertEngine] = None,
        clock: Optional[Clock] = None,
        error_window_seconds: float = 300.0,
    ):
        self.metric_store = metric_store
        self.cache = cache
        self.alert_engine = alert_engine
        self.clock = clock or SystemClock()
        self.error_window_seconds = error_window_seconds
        self.started_at = self.clock.now()
        self.logger = get_logger("core.health")
        self._snapshots: Dict[str, SystemHealth] = {}

    async def tenants(self) -> List[str]:
        tenants = set(await self.metric_store.tenants())
        if self.cache is not None:
            tenants.update(self.cache.tenants())
        return sorted(tenants)

    async def run_once(self) -> Dict[str, SystemHealth]:
        """Check every known tenant. A failing tenant does not stop the others."""
        results = {}
        for tenant_id in await self.tenants():
            try:
                results[tenant_id] = await self.check_tenant(tenant_id)
            except Exception as e:
                self.logger.error("Health check failed for tenant", tenant_id=tenant_id, error=str(e))
        return results

    async def check_tenant(self, tenant_id: str) -> SystemHealth:
        now = self.clock.now()
        window = TimeRange(now - self.error_window_seconds, now)

        requests = sum(p.value for p in await self.metric_store.query(tenant_id, GATEWAY_REQUEST_METRIC, window))
        errors = sum(p.value for p in await self.metric_store.query(tenant_id, GATEWAY_ERROR_METRIC, window))
        error_rate = errors / requests * 100 if requests else 0.0

        cache_requests = 0
        cache_hit_rate = 0.0
        if self.cache is not None:
            stats = self.cache.stats(tenant_id)
            cache_requests = stats.requests
            cache_hit_rate = stats.hit_rate

        firing = 0
        if self.alert_engine is not None:
            firing = len(self.alert_engine.list_alerts(tenant_id, firing_only=True))

        status = HealthStatus.HEALTHY
        if error_rate > ERROR_RATE_WARNING or (cache_requests and cache_hit_rate < CACHE_HIT_RATE_WARNING):
            status = HealthStatus.WARNING
        if error_rate > ERROR_RATE_CRITICAL or (cache_requests and cache_hit_rate < CACHE_HIT_RATE_CRITICAL):
            status = HealthStatus.CRITICAL

        uptime = now - self.started_at
        health = SystemHealth(
            tenant_id=tenant_id,
            status=status,
            checked_at=now,
            uptime_seconds=uptime,
            cache_hit_rate=cache_hit_rate,
            error_rate=error_rate,
            firing_alerts=firing,
            metrics={"gateway_requests": requests, "gateway_errors": errors, "cache_requests": cache_requests},
        )
        self._snapshots[tenant_id] = health

        # A tenant without cache traffic has no meaningful hit rate
        if cache_requests:
            await self.metric_store.record(tenant_id, "system.cache_hit_rate", cache_hit_rate)
        await self.metric_store.record(tenant_id, "system.error_rate", error_rate)
        await self.metric_store.record(tenant_id, "system.uptime", uptime)

        self.logger.debug("Tenant health checked", tenant_id=tenant_id, status=status.value)
        return health

    def get_system_health(self, tenant_id: str) -> Optional[SystemHealth]:
        return self._snapshots.get(tenant_id)

    async def dashboard(self, tenant_id: str) -> Dict[str, Any]:
        """Health, firing alerts, cache stats and last-hour request figures."""
        now = self.clock.now()
        last_hour = TimeRange(now - 3600, now)

        response_time = await self.metric_store.summarize(tenant_id, "api.response_time", last_hour)
        requests = await self.metric_store.query(tenant_id, "api.request_count", last_hour)
        errors = await self.metric_store.query(tenant_id, "api.error_count", last_hour)

        health = self.get_system_health(tenant_id)
        firing = self.alert_engine.list_alerts(tenant_id, firing_only=True) if self.alert_engine else []
        return {
            "tenant_id": tenant_id,
            "health": health.to_dict() if health else None,
            "alerts": len(firing),
            "cache": self.cache.stats(tenant_id).to_dict() if self.cache else None,
            "performance": {
                "avg_response_time": response_time.avg_value or 0.0,
                "total_requests": sum(p.value for p in requests),
                "total_errors": sum(p.value for p in errors),
            },
            "timestamp": now,
        }
