"""
Per-tenant metric history.

Every series holds at most ``max_points_per_series`` points in arrival
order; the oldest point is dropped first. Writes notify listeners, which is
how the alert engine sees new values without the store depending on it.
"""

import math
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.clock import Clock, SystemClock
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tenancy import validate_tenant_id

from service_core.app.monitoring.backends import InMemoryMetricBackend, MetricBackend, SeriesKey
from service_core.app.monitoring.models import MetricPoint, MetricSummary, TimeRange

MetricListener = Callable[[MetricPoint], Awaitable[Any]]

DEFAULT_MAX_POINTS = 1000
DEFAULT_RETENTION_HOURS = 24


class MetricStore:
    """Bounded, tenant-scoped metric store. Never raises to callers."""

    def __init__(
        self,
        backend: Optional[MetricBackend] = None,
        clock: Optional[Clock] = None,
        max_points_per_series: int = DEFAULT_MAX_POINTS,
        retention_hours: int = DEFAULT_RETENTION_HOURS,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.backend = backend or InMemoryMetricBackend()
        self.clock = clock or SystemClock()
        self.max_points_per_series = max_points_per_series
        self.retention_hours = retention_hours
        self.metrics = metrics
        self.logger = get_logger("core.metric_store")
        self._listeners: List[MetricListener] = []

    def add_listener(self, listener: MetricListener) -> None:
        """Register a coroutine called with every recorded point."""
        self._listeners.append(listener)

    async def record(
        self,
        tenant_id: str,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
    ) -> Optional[MetricPoint]:
        """Append a point stamped with the current time.

        Returns the stored point, or ``None`` when the point was rejected or
        the backend failed.
        """
        try:
            validate_tenant_id(tenant_id)
            numeric = float(value)
            if not math.isfinite(numeric):
                raise ValueError(f"non-finite metric value: {value!r}")
            point = MetricPoint(
                tenant_id=tenant_id,
                name=name,
                timestamp=self.clock.now(),
                value=numeric,
                tags={str(k): str(v) for k, v in (tags or {}).items()},
            )
            await self.backend.append(point, self.max_points_per_series)
        except Exception as e:
            self.logger.warning("Failed to record metric", tenant_id=tenant_id, metric=name, error=str(e))
            return None

        for listener in list(self._listeners):
            try:
                await listener(point)
            except Exception as e:
                self.logger.error("Metric listener failed", tenant_id=tenant_id, metric=name, error=str(e))

        return point

    async def query(
        self,
        tenant_id: str,
        name: str,
        time_range: Optional[TimeRange] = None,
    ) -> List[MetricPoint]:
        """Points of one series in arrival order, optionally range-filtered."""
        try:
            points = await self.backend.points(tenant_id, name)
        except Exception as e:
            self.logger.warning("Failed to query metric", tenant_id=tenant_id, metric=name, error=str(e))
            return []

        if time_range is None:
            return points
        return [p for p in points if time_range.contains(p.timestamp)]

    async def latest(self, tenant_id: str, name: str, since: Optional[float] = None) -> Optional[MetricPoint]:
        """Most recently recorded point, ignoring points older than ``since``."""
        points = await self.query(tenant_id, name)
        for point in reversed(points):
            if since is None or point.timestamp >= since:
                return point
        return None

    async def summarize(
        self,
        tenant_id: str,
        name: str,
        time_range: Optional[TimeRange] = None,
    ) -> MetricSummary:
        points = await self.query(tenant_id, name, time_range)
        if not points:
            return MetricSummary(name=name)

        values = [p.value for p in points]
        return MetricSummary(
            name=name,
            count=len(values),
            min_value=min(values),
            max_value=max(values),
            avg_value=sum(values) / len(values),
            last_value=values[-1],
        )

    async def prune(self, retention_hours: Optional[float] = None) -> int:
        """Drop points older than the retention window across all series."""
        hours = self.retention_hours if retention_hours is None else retention_hours
        cutoff = self.clock.now() - hours * 3600
        try:
            removed = await self.backend.prune_before(cutoff)
        except Exception as e:
            self.logger.error("Metric pruning failed", error=str(e))
            return 0

        if removed and self.metrics:
            self.metrics.increment_counter("metric_points_pruned_total", removed)
        self.logger.info("Pruned metric points", removed=removed, retention_hours=hours)
        return removed

    async def series(self, tenant_id: Optional[str] = None) -> List[SeriesKey]:
        """Known (tenant, metric) pairs."""
        try:
            keys = await self.backend.series()
        except Exception as e:
            self.logger.warning("Failed to list metric series", error=str(e))
            return []
        if tenant_id is not None:
            keys = [key for key in keys if key[0] == tenant_id]
        return sorted(keys)

    async def tenants(self) -> List[str]:
        return sorted({tenant_id for tenant_id, _ in await self.series()})
