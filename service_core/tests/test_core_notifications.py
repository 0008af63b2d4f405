"""
Unit tests for alert notification delivery.
"""

import asyncio
import json

import httpx
import pytest

from service_core.app.monitoring.models import Alert, AlertCondition, AlertSeverity, ConditionOperator
from service_core.app.monitoring.notifications import (
    AlertNotification,
    LoggingNotificationSink,
    NotificationDispatcher,
    WebhookNotificationSink,
)
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from shared.test_helpers import FakeClock, RecordingSink


def make_notification(alert_id: str = "alert_1") -> AlertNotification:
    alert = Alert(
        alert_id=alert_id,
        tenant_id="acme",
        name="Slow API",
        metric="api.response_time",
        condition=AlertCondition(ConditionOperator.GREATER_THAN, 2000),
        severity=AlertSeverity.HIGH,
        created_at=1000.0,
        description="API response time is above 2 seconds",
        triggered_at=1010.0,
    )
    return AlertNotification.from_alert(alert, 2500.0)


class TestAlertNotification:
    """Test cases for AlertNotification."""

    def test_payload(self):
        payload = make_notification().to_payload()

        assert payload["type"] == "system_alert"
        assert payload["severity"] == "high"
        assert payload["title"] == "System alert: Slow API"
        assert payload["tenant"] == "acme"
        assert payload["metadata"] == {
            "alert_id": "alert_1",
            "metric": "api.response_time",
            "condition": "greater_than",
            "threshold": 2000,
            "value": 2500.0,
            "triggered_at": 1010.0,
        }


class TestNotificationDispatcher:
    """Test cases for NotificationDispatcher."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def retry_config(self):
        return RetryConfig(max_attempts=3, base_delay=1.0, jitter=False)

    def test_publish_rejects_when_queue_full(self, clock):
        metrics = MetricsCollector("core-test")
        dispatcher = NotificationDispatcher(max_queue_size=2, clock=clock, metrics=metrics)

        results = [dispatcher.publish(make_notification(f"alert_{i}")) for i in range(3)]

        assert results == [True, True, False]
        assert dispatcher.pending == 2
        assert dispatcher.stats["published"] == 2
        assert dispatcher.stats["dropped"] == 1
        assert metrics.registry.get_sample_value("notifications_total", {"status": "dropped"}) == 1.0
        assert metrics.registry.get_sample_value("notification_queue_depth") == 2.0

    @pytest.mark.asyncio
    async def test_deliver_pending_fans_out_to_sinks(self, clock, retry_config):
        first, second = RecordingSink(), RecordingSink()
        dispatcher = NotificationDispatcher(sinks=[first], retry_config=retry_config, clock=clock)
        dispatcher.add_sink(second)
        dispatcher.publish(make_notification())

        handled = await dispatcher.deliver_pending()

        assert handled == 1
        assert len(first.received) == 1
        assert len(second.received) == 1
        assert dispatcher.stats["delivered"] == 2
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_flaky_sink_is_retried_with_backoff(self, clock, retry_config):
        sink = RecordingSink(fail_times=2)
        dispatcher = NotificationDispatcher(sinks=[sink], retry_config=retry_config, clock=clock)
        dispatcher.publish(make_notification())

        await dispatcher.deliver_pending()

        assert sink.calls == 3
        assert len(sink.received) == 1
        assert clock.sleeps == [1.0, 2.0]
        assert dispatcher.stats["failed"] == 0

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_others(self, clock, retry_config):
        broken = RecordingSink(fail_times=100)
        healthy = RecordingSink()
        dispatcher = NotificationDispatcher(sinks=[broken, healthy], retry_config=retry_config, clock=clock)
        dispatcher.publish(make_notification())

        await dispatcher.deliver_pending()

        assert broken.calls == 3
        assert broken.received == []
        assert len(healthy.received) == 1
        assert dispatcher.stats["failed"] == 1
        assert dispatcher.stats["delivered"] == 1

    @pytest.mark.asyncio
    async def test_worker_delivers_in_background(self, clock, retry_config):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(sinks=[sink], retry_config=retry_config, clock=clock)
        await dispatcher.start()
        try:
            dispatcher.publish(make_notification())
            await asyncio.wait_for(dispatcher.queue.join(), timeout=2.0)
        finally:
            await dispatcher.stop()

        assert len(sink.received) == 1
        assert dispatcher.running is False
        assert dispatcher.processing_task is None

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, clock, retry_config):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(sinks=[sink], retry_config=retry_config, clock=clock)
        dispatcher.publish(make_notification("alert_1"))
        dispatcher.publish(make_notification("alert_2"))

        await dispatcher.stop(drain=True)

        assert [n.alert_id for n in sink.received] == ["alert_1", "alert_2"]

    @pytest.mark.asyncio
    async def test_logging_sink_accepts_notifications(self):
        await LoggingNotificationSink().notify(make_notification())


class TestWebhookNotificationSink:
    """Test cases for WebhookNotificationSink."""

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = WebhookNotificationSink("https://hooks.example.com/alerts", client=client)

        await sink.notify(make_notification())

        assert len(received) == 1
        assert received[0].method == "POST"
        assert str(received[0].url) == "https://hooks.example.com/alerts"
        assert json.loads(received[0].content)["metadata"]["alert_id"] == "alert_1"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        sink = WebhookNotificationSink("https://hooks.example.com/alerts", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await sink.notify(make_notification())
        await client.aclose()
