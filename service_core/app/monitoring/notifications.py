"""
Outbound alert notifications.

The alert engine only enqueues; a dispatcher worker drains the queue and
fans each notification out to the configured sinks with retry. A full queue
rejects new notifications instead of blocking evaluation.
"""

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional, Protocol

import httpx

from shared.clock import Clock, SystemClock
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry

from service_core.app.monitoring.models import Alert


@dataclass(frozen=True)
class AlertNotification:
    """Snapshot of an alert at the moment it triggered."""
    alert_id: str
    tenant_id: str
    name: str
    description: str
    metric: str
    severity: str
    operator: Any
    threshold: Any
    value: float
    triggered_at: float

    @classmethod
    def from_alert(cls, alert: Alert, value: float) -> "AlertNotification":
        condition = alert.condition.to_dict()
        return cls(
            alert_id=alert.alert_id,
            tenant_id=alert.tenant_id,
            name=alert.name,
            description=alert.description,
            metric=alert.metric,
            severity=alert.severity.value,
            operator=condition["operator"],
            threshold=condition["threshold"],
            value=value,
            triggered_at=alert.triggered_at,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "system_alert",
            "severity": self.severity,
            "title": f"System alert: {self.name}",
            "message": self.description,
            "tenant": self.tenant_id,
            "metadata": {
                "alert_id": self.alert_id,
                "metric": self.metric,
                "condition": self.operator,
                "threshold": self.threshold,
                "value": self.value,
                "triggered_at": self.triggered_at,
            },
        }


class NotificationSink(Protocol):
    """Destination for alert notifications."""

    async def notify(self, notification: AlertNotification) -> None:
        ...


class LoggingNotificationSink:
    """Writes notifications to the structured log."""

    def __init__(self):
        self.logger = get_logger("core.notifications.log")

    async def notify(self, notification: AlertNotification) -> None:
        self.logger.warning(
            "Alert triggered",
            alert_id=notification.alert_id,
            alert_name=notification.name,
            tenant_id=notification.tenant_id,
            severity=notification.severity,
            metric=notification.metric,
            value=notification.value,
            threshold=notification.threshold,
        )


class WebhookNotificationSink:
    """POSTs the notification payload as JSON."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()

    async def notify(self, notification: AlertNotification) -> None:
        response = await self.client.post(
            self.url,
            json=notification.to_payload(),
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()

    async def close(self):
        if self._owns_client:
            await self.client.aclose()


class NotificationDispatcher:
    """Bounded queue plus a background delivery worker."""

    def __init__(
        self,
        sinks: Optional[List[NotificationSink]] = None,
        max_queue_size: int = 1000,
        retry_config: Optional[RetryConfig] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.sinks: List[NotificationSink] = list(sinks or [])
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0)
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.logger = get_logger("core.notifications")

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.processing_task: Optional[asyncio.Task] = None
        self.running = False
        self.stats = {"published": 0, "dropped": 0, "delivered": 0, "failed": 0}

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    def publish(self, notification: AlertNotification) -> bool:
        """Enqueue without blocking. Returns ``False`` when the queue is full."""
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            self.logger.warning(
                "Notification queue full, dropping notification",
                alert_id=notification.alert_id,
                tenant_id=notification.tenant_id,
            )
            self._count("dropped")
            return False

        self.stats["published"] += 1
        self._update_depth()
        return True

    async def start(self):
        """Start the delivery worker."""
        if self.running:
            return
        self.running = True
        self.processing_task = asyncio.create_task(self._process_queue())
        self.logger.info("Notification dispatcher started", sinks=len(self.sinks))

    async def stop(self, drain: bool = True):
        """Stop the worker, optionally delivering what is still queued."""
        self.running = False
        if self.processing_task:
            self.processing_task.cancel()
            try:
                await self.processing_task
            except asyncio.CancelledError:
                pass
            self.processing_task = None

        if drain:
            await self.deliver_pending()
        self.logger.info("Notification dispatcher stopped")

    async def deliver_pending(self) -> int:
        """Deliver everything currently queued. Returns the number handled."""
        handled = 0
        while True:
            try:
                notification = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                await self._deliver(notification)
            finally:
                self.queue.task_done()
            handled += 1
        self._update_depth()
        return handled

    async def _process_queue(self):
        """Process the notification queue."""
        while self.running:
            try:
                notification = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                await self._deliver(notification)
            except Exception as e:
                self.logger.error("Error processing notification queue", error=str(e))
            finally:
                self.queue.task_done()
                self._update_depth()

    async def _deliver(self, notification: AlertNotification):
        for sink in list(self.sinks):
            sink_name = type(sink).__name__
            try:
                await call_with_retry(
                    partial(sink.notify, notification),
                    config=self.retry_config,
                    sleep=self.clock.sleep,
                    name=f"notify.{sink_name}",
                )
            except RetryError as e:
                self.stats["failed"] += 1
                self._count("failed")
                self.logger.error(
                    "Notification delivery failed",
                    sink=sink_name,
                    alert_id=notification.alert_id,
                    tenant_id=notification.tenant_id,
                    attempts=e.attempts,
                    error=str(e.last_exception),
                )
            else:
                self.stats["delivered"] += 1
                self._count("delivered")

    def _count(self, status: str):
        if self.metrics:
            self.metrics.increment_counter("notifications_total", status=status)

    def _update_depth(self):
        if self.metrics:
            self.metrics.set_gauge("notification_queue_depth", self.queue.qsize())
