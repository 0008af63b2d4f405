"""
Core infrastructure service: metrics, alerts, tenant cache and API gateway.
"""

import time
from typing import Any, Dict, List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.requests import Request

from shared.base_service import TENANT_HEADER, BaseService
from shared.clock import Clock, SystemClock
from shared.config import ServiceConfig
from shared.errors import ValidationError
from shared.tenancy import resolve_tenant, validate_tenant_id

from .caching.backends import InMemoryKVBackend, RedisKVBackend
from .caching.tenant_cache import TenantCache
from .gateway.client import RetryingClient
from .gateway.models import APIRequest, GatewayFailure, GatewayRateLimited
from .gateway.registry import APIConfigRegistry
from .monitoring.alert_engine import AlertEngine, setup_default_alerts
from .monitoring.backends import InMemoryMetricBackend, RedisMetricBackend
from .monitoring.health import HealthMonitor
from .monitoring.metric_store import MetricStore
from .monitoring.models import AlertConfig, TimeRange
from .monitoring.notifications import (
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
    WebhookNotificationSink,
)
from .monitoring.scheduler import PeriodicTask
from .ratelimit.backends import InMemoryRateWindowBackend, RedisRateWindowBackend
from .ratelimit.sliding_window import SlidingWindowRateLimiter

UNTRACKED_PATHS = ("/health", "/metrics")


class MetricRecordRequest(BaseModel):
    """Body of a metric write."""

    name: str = Field(min_length=1)
    value: float
    tags: Dict[str, str] = Field(default_factory=dict)


async def current_tenant() -> str:
    """Tenant bound to the request by the tenant middleware."""
    return resolve_tenant()


class CoreService(BaseService):
    """Core service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        clock: Optional[Clock] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        notification_sinks: Optional[List[NotificationSink]] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        super().__init__("core", 8010, config)
        self.clock = clock or SystemClock()
        self._redis = redis_client

        self._build_components(http_client, notification_sinks)

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_tenant_middleware()
        self._setup_core_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.core_service = self

    def _build_components(self, http_client, notification_sinks):
        config = self.config

        if config.storage_backend == "redis":
            if self._redis is None:
                self._redis = redis.from_url(config.redis_url)
            metric_backend = RedisMetricBackend(self._redis)
            kv_backend = RedisKVBackend(config.redis_url, client=self._redis)
            window_backend = RedisRateWindowBackend(config.redis_url, client=self._redis)
        else:
            metric_backend = InMemoryMetricBackend()
            kv_backend = InMemoryKVBackend(self.clock)
            window_backend = InMemoryRateWindowBackend()

        self.metric_store = MetricStore(
            backend=metric_backend,
            clock=self.clock,
            max_points_per_series=config.metric_max_points_per_series,
            retention_hours=config.metric_retention_hours,
            metrics=self.metrics,
        )

        sinks: List[NotificationSink] = [LoggingNotificationSink()]
        if config.alert_webhook_url:
            sinks.append(WebhookNotificationSink(config.alert_webhook_url))
        sinks.extend(notification_sinks or [])
        self.dispatcher = NotificationDispatcher(
            sinks=sinks,
            max_queue_size=config.notification_queue_size,
            clock=self.clock,
            metrics=self.metrics,
        )

        self.alert_engine = AlertEngine(
            metric_store=self.metric_store,
            dispatcher=self.dispatcher,
            clock=self.clock,
            metrics=self.metrics,
            sweep_lookback_seconds=config.alert_sweep_lookback_seconds,
        )

        self.cache = TenantCache(
            backend=kv_backend,
            metric_store=self.metric_store,
            clock=self.clock,
            default_ttl_seconds=config.cache_default_ttl_seconds,
            metrics=self.metrics,
        )

        self.rate_limiter = SlidingWindowRateLimiter(backend=window_backend, clock=self.clock, metrics=self.metrics)

        self.registry = APIConfigRegistry.with_defaults() if config.load_default_apis else APIConfigRegistry()
        if config.api_configs_file:
            self.registry.load_file(config.api_configs_file)

        self.gateway = RetryingClient(
            registry=self.registry,
            cache=self.cache,
            rate_limiter=self.rate_limiter,
            metric_store=self.metric_store,
            http_client=http_client,
            clock=self.clock,
            metrics=self.metrics,
            user_agent=config.http_user_agent,
            default_timeout_ms=config.default_timeout_ms,
        )

        self.health_monitor = HealthMonitor(
            metric_store=self.metric_store,
            cache=self.cache,
            alert_engine=self.alert_engine,
            clock=self.clock,
        )

        self.periodic_tasks = [
            PeriodicTask("metric_prune", config.metric_prune_interval_seconds, self.metric_store.prune),
            PeriodicTask("alert_sweep", config.alert_sweep_interval_seconds, self.alert_engine.sweep),
            PeriodicTask("health_check", config.health_check_interval_seconds, self.health_monitor.run_once),
        ]

    async def start(self):
        """Start background workers."""
        await self.dispatcher.start()
        for task in self.periodic_tasks:
            await task.start()
        self.logger.info("Core service started", storage_backend=self.config.storage_backend)

    async def stop(self):
        """Stop background workers and release clients."""
        for task in self.periodic_tasks:
            await task.stop()
        await self.dispatcher.stop()
        for sink in self.dispatcher.sinks:
            if isinstance(sink, WebhookNotificationSink):
                await sink.close()
        await self.gateway.close()
        if self._redis is not None:
            await self._redis.aclose()
        self.logger.info("Core service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "cache": "ok" if await self.cache.is_connected() else "unavailable",
            "notifications": "running" if self.dispatcher.running else "stopped",
        }

    def _setup_tenant_middleware(self):
        """Record per-tenant API metrics for tenant-scoped requests."""

        @self.app.middleware("http")
        async def tenant_metrics(request: Request, call_next):
            tenant_id = request.headers.get(TENANT_HEADER)
            start_time = time.perf_counter()
            response = await call_next(request)

            if tenant_id and request.url.path not in UNTRACKED_PATHS:
                await self._record_api_metrics(tenant_id, request, response.status_code, start_time)
            return response

    async def _record_api_metrics(self, tenant_id: str, request: Request, status_code: int, start_time: float):
        try:
            validate_tenant_id(tenant_id)
        except ValidationError:
            return

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        tags = {"method": request.method, "path": request.url.path, "status": str(status_code)}
        await self.metric_store.record(tenant_id, "api.response_time", elapsed_ms, tags)
        await self.metric_store.record(tenant_id, "api.request_count", 1, tags)
        if status_code >= 400:
            await self.metric_store.record(tenant_id, "api.error_count", 1, tags)

    def _setup_core_routes(self):
        """Set up core-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "core",
                "message": "Tenant Infrastructure Core",
                "version": "1.0.0",
                "capabilities": ["metrics", "alerts", "cache", "gateway", "health"]
            }

        # Metrics

        @self.app.post("/api/v1/metrics")
        async def record_metric(payload: MetricRecordRequest, tenant_id: str = Depends(current_tenant)):
            point = await self.metric_store.record(tenant_id, payload.name, payload.value, payload.tags)
            if point is None:
                raise ValidationError("Metric was rejected", {"name": payload.name})
            return point.to_dict()

        @self.app.get("/api/v1/metrics")
        async def list_series(tenant_id: str = Depends(current_tenant)):
            series = await self.metric_store.series(tenant_id)
            return {"tenant_id": tenant_id, "series": [name for _, name in series]}

        @self.app.get("/api/v1/metrics/{name}")
        async def query_metric(
            name: str,
            start: Optional[float] = Query(default=None),
            end: Optional[float] = Query(default=None),
            tenant_id: str = Depends(current_tenant),
        ):
            time_range = None
            if start is not None or end is not None:
                time_range = TimeRange(
                    start if start is not None else float("-inf"),
                    end if end is not None else float("inf"),
                )
            points = await self.metric_store.query(tenant_id, name, time_range)
            summary = await self.metric_store.summarize(tenant_id, name, time_range)
            return {
                "tenant_id": tenant_id,
                "name": name,
                "points": [point.to_dict() for point in points],
                "summary": summary.to_dict(),
            }

        # Alerts

        @self.app.post("/api/v1/alerts", status_code=201)
        async def create_alert(config: AlertConfig, tenant_id: str = Depends(current_tenant)):
            alert_id = self.alert_engine.create_from_config(tenant_id, config)
            return self.alert_engine.get(alert_id).to_dict()

        @self.app.post("/api/v1/alerts/defaults", status_code=201)
        async def create_default_alerts(tenant_id: str = Depends(current_tenant)):
            alert_ids = setup_default_alerts(self.alert_engine, tenant_id)
            return {"tenant_id": tenant_id, "alert_ids": alert_ids}

        @self.app.get("/api/v1/alerts")
        async def list_alerts(firing_only: bool = Query(default=False), tenant_id: str = Depends(current_tenant)):
            alerts = self.alert_engine.list_alerts(tenant_id, firing_only=firing_only)
            return {"tenant_id": tenant_id, "alerts": [alert.to_dict() for alert in alerts]}

        def tenant_alert(alert_id: str, tenant_id: str):
            alert = self.alert_engine.get(alert_id)
            if alert is None or alert.tenant_id != tenant_id:
                raise HTTPException(status_code=404, detail=f"Alert not found: {alert_id}")
            return alert

        @self.app.post("/api/v1/alerts/{alert_id}/resolve")
        async def resolve_alert(alert_id: str, tenant_id: str = Depends(current_tenant)):
            alert = tenant_alert(alert_id, tenant_id)
            self.alert_engine.resolve(alert_id)
            return alert.to_dict()

        @self.app.post("/api/v1/alerts/{alert_id}/active")
        async def set_alert_active(
            alert_id: str,
            active: bool = Body(..., embed=True),
            tenant_id: str = Depends(current_tenant),
        ):
            alert = tenant_alert(alert_id, tenant_id)
            self.alert_engine.set_active(alert_id, active)
            return alert.to_dict()

        # Cache

        @self.app.get("/api/v1/cache/stats")
        async def cache_stats(tenant_id: str = Depends(current_tenant)):
            return {"tenant_id": tenant_id, "stats": self.cache.stats(tenant_id).to_dict()}

        @self.app.delete("/api/v1/cache/tags/{tag}")
        async def invalidate_cache_tag(tag: str, tenant_id: str = Depends(current_tenant)):
            removed = await self.cache.invalidate_by_tag(tenant_id, tag)
            return {"tenant_id": tenant_id, "tag": tag, "removed": removed}

        @self.app.delete("/api/v1/cache")
        async def invalidate_tenant_cache(tenant_id: str = Depends(current_tenant)):
            removed = await self.cache.invalidate_tenant(tenant_id)
            return {"tenant_id": tenant_id, "removed": removed}

        # Gateway

        @self.app.get("/api/v1/gateway/apis")
        async def list_apis(tenant_id: str = Depends(current_tenant)):
            return {"apis": [config.public_view() for config in self.registry.list(tenant_id)]}

        @self.app.post("/api/v1/gateway/{api_name}/request")
        async def gateway_request(api_name: str, api_request: APIRequest, tenant_id: str = Depends(current_tenant)):
            result = await self.gateway.request(tenant_id, api_name, api_request)
            if isinstance(result, GatewayRateLimited):
                status_code = 429
            elif isinstance(result, GatewayFailure):
                status_code = result.error.status_code
            else:
                status_code = 200
            return JSONResponse(status_code=status_code, content=result.to_response())

        @self.app.get("/api/v1/gateway/{api_name}/stats")
        async def gateway_stats(api_name: str, tenant_id: str = Depends(current_tenant)):
            stats = await self.gateway.get_api_stats(tenant_id, api_name)
            if stats["config"] is None:
                raise HTTPException(status_code=404, detail=f"API configuration not found: {api_name}")
            return stats

        @self.app.delete("/api/v1/gateway/{api_name}/cache")
        async def invalidate_gateway_cache(api_name: str, tenant_id: str = Depends(current_tenant)):
            removed = await self.gateway.invalidate_cache(tenant_id, api_name)
            return {"tenant_id": tenant_id, "api": api_name, "removed": removed}

        # Health

        @self.app.get("/api/v1/health/system")
        async def system_health(tenant_id: str = Depends(current_tenant)):
            health = self.health_monitor.get_system_health(tenant_id)
            if health is None:
                health = await self.health_monitor.check_tenant(tenant_id)
            return health.to_dict()

        @self.app.get("/api/v1/dashboard")
        async def dashboard(tenant_id: str = Depends(current_tenant)) -> Dict[str, Any]:
            return await self.health_monitor.dashboard(tenant_id)


def create_app():
    """Create FastAPI application."""
    service = CoreService()
    return service.app


if __name__ == "__main__":
    service = CoreService()
    service.run()
