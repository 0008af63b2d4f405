"""
Shared Prometheus metrics for the Tenant Infrastructure Core.

These are process-level export counters. Per-tenant time series that alerts
evaluate against live in the core's MetricStore instead; tenant ids are kept
out of Prometheus labels to bound cardinality.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # A private registry per collector so several services (or tests) can
        # coexist in one process without duplicate registration errors.
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_cache_metrics()
        self._setup_gateway_metrics()
        self._setup_monitoring_metrics()

    def _setup_cache_metrics(self):
        """Set up cache metrics."""
        self._metrics["cache_requests_total"] = Counter(
            "cache_requests_total",
            "Total cache lookups",
            ["result"],
            registry=self.registry
        )

        self._metrics["cache_invalidations_total"] = Counter(
            "cache_invalidations_total",
            "Total cache keys removed by invalidation",
            ["kind"],
            registry=self.registry
        )

        self._metrics["cache_backend_errors_total"] = Counter(
            "cache_backend_errors_total",
            "Total cache backend failures absorbed",
            ["operation"],
            registry=self.registry
        )

    def _setup_gateway_metrics(self):
        """Set up gateway-specific metrics."""
        self._metrics["rate_limit_decisions_total"] = Counter(
            "rate_limit_decisions_total",
            "Total rate limit decisions",
            ["api", "decision"],
            registry=self.registry
        )

        self._metrics["gateway_requests_total"] = Counter(
            "gateway_requests_total",
            "Total outbound gateway requests by outcome",
            ["api", "outcome"],
            registry=self.registry
        )

        self._metrics["gateway_request_duration_seconds"] = Histogram(
            "gateway_request_duration_seconds",
            "Outbound gateway request duration in seconds",
            ["api"],
            registry=self.registry
        )

        self._metrics["gateway_retries_total"] = Counter(
            "gateway_retries_total",
            "Total outbound retry attempts",
            ["api"],
            registry=self.registry
        )

    def _setup_monitoring_metrics(self):
        """Set up metric store and alerting metrics."""
        self._metrics["metric_points_pruned_total"] = Counter(
            "metric_points_pruned_total",
            "Total metric points removed by retention pruning",
            registry=self.registry
        )

        self._metrics["alert_transitions_total"] = Counter(
            "alert_transitions_total",
            "Total alert lifecycle transitions",
            ["transition", "severity"],
            registry=self.registry
        )

        self._metrics["notifications_total"] = Counter(
            "notifications_total",
            "Total alert notifications by delivery status",
            ["status"],
            registry=self.registry
        )

        self._metrics["notification_queue_depth"] = Gauge(
            "notification_queue_depth",
            "Pending alert notifications",
            registry=self.registry
        )

    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, amount: float = 1.0, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
