"""
Threshold alerts and their lifecycle.

    untriggered --breach--> triggered --no breach / resolve()--> resolved
                                ^                                    |
                                +---------------breach---------------+

Alerts are evaluated whenever the metric store records a value for their
(tenant, metric), and again by a periodic sweep that covers missed writes.
"""

import math
import uuid
from collections import defaultdict
from numbers import Real
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from shared.clock import Clock, SystemClock
from shared.errors import AlertConditionError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tenancy import validate_tenant_id

from service_core.app.monitoring.metric_store import MetricStore
from service_core.app.monitoring.models import (
    Alert,
    AlertCondition,
    AlertConfig,
    AlertEvaluation,
    AlertEvent,
    AlertOutcome,
    AlertSeverity,
    AlertState,
    ConditionOperator,
    MetricPoint,
)
from service_core.app.monitoring.notifications import AlertNotification, NotificationDispatcher

EvaluationObserver = Callable[[Alert, AlertEvaluation], None]


class AlertRepository(Protocol):
    """Alert storage."""

    def add(self, alert: Alert) -> None:
        ...

    def get(self, alert_id: str) -> Optional[Alert]:
        ...

    def for_tenant(self, tenant_id: str) -> List[Alert]:
        ...

    def all(self) -> List[Alert]:
        ...


class InMemoryAlertRepository:
    """Process-local alert storage."""

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._by_tenant: Dict[str, List[str]] = defaultdict(list)

    def add(self, alert: Alert) -> None:
        self._alerts[alert.alert_id] = alert
        self._by_tenant[alert.tenant_id].append(alert.alert_id)

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def for_tenant(self, tenant_id: str) -> List[Alert]:
        return [self._alerts[alert_id] for alert_id in list(self._by_tenant.get(tenant_id, ()))]

    def all(self) -> List[Alert]:
        return list(self._alerts.values())


def condition_breached(condition: AlertCondition, value: float) -> bool:
    """Compare ``value`` against the condition. Raises AlertConditionError if malformed."""
    try:
        operator = ConditionOperator(condition.operator)
    except ValueError:
        raise AlertConditionError(
            f"Unknown alert operator: {condition.operator!r}",
            {"operator": str(condition.operator)},
        )

    threshold = condition.threshold
    if isinstance(threshold, bool) or not isinstance(threshold, Real) or math.isnan(threshold):
        raise AlertConditionError(
            f"Alert threshold must be a number: {threshold!r}",
            {"threshold": str(threshold)},
        )

    if operator == ConditionOperator.GREATER_THAN:
        return value > threshold
    if operator == ConditionOperator.LESS_THAN:
        return value < threshold
    return value == threshold


class AlertEngine:
    """Evaluates alerts and drives their lifecycle."""

    def __init__(
        self,
        metric_store: Optional[MetricStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        repository: Optional[AlertRepository] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        sweep_lookback_seconds: float = 300.0,
        history_limit: int = 100,
    ):
        self.metric_store = metric_store
        self.dispatcher = dispatcher
        self.repository = repository or InMemoryAlertRepository()
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.sweep_lookback_seconds = sweep_lookback_seconds
        self.history_limit = history_limit
        self.logger = get_logger("core.alerts")
        self._observers: List[EvaluationObserver] = []

        if metric_store is not None:
            metric_store.add_listener(self._on_metric)

    def add_observer(self, observer: EvaluationObserver) -> None:
        """Register a callback invoked with every evaluation."""
        self._observers.append(observer)

    def create(
        self,
        tenant_id: str,
        name: str,
        metric: str,
        condition: AlertCondition,
        severity=AlertSeverity.MEDIUM,
        description: str = "",
    ) -> str:
        """Create an active, untriggered alert and return its id."""
        validate_tenant_id(tenant_id)
        try:
            severity = AlertSeverity(severity)
        except ValueError:
            raise ValidationError(f"Unknown alert severity: {severity!r}", {"severity": str(severity)})

        now = self.clock.now()
        alert = Alert(
            alert_id=f"alert_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            tenant_id=tenant_id,
            name=name,
            metric=metric,
            condition=condition,
            severity=severity,
            created_at=now,
            description=description,
        )

        try:
            condition_breached(condition, 0.0)
        except AlertConditionError as e:
            # Kept anyway; it will simply never fire
            self.logger.warning("Alert created with malformed condition", alert_id=alert.alert_id, error=e.message)

        self.repository.add(alert)
        self.logger.info(
            "Alert created",
            alert_id=alert.alert_id,
            tenant_id=tenant_id,
            metric=metric,
            severity=severity.value,
        )
        return alert.alert_id

    def create_from_config(self, tenant_id: str, config: AlertConfig) -> str:
        return self.create(
            tenant_id,
            name=config.name,
            metric=config.metric,
            condition=AlertCondition(operator=config.condition, threshold=config.threshold),
            severity=config.severity,
            description=config.description,
        )

    def get(self, alert_id: str) -> Optional[Alert]:
        return self.repository.get(alert_id)

    def list_alerts(self, tenant_id: str, firing_only: bool = False) -> List[Alert]:
        alerts = self.repository.for_tenant(tenant_id)
        if firing_only:
            return [alert for alert in alerts if alert.is_firing]
        return alerts

    def set_active(self, alert_id: str, active: bool) -> bool:
        alert = self.repository.get(alert_id)
        if alert is None:
            return False
        alert.is_active = active
        self.logger.info("Alert activation changed", alert_id=alert_id, is_active=active)
        return True

    def evaluate(self, tenant_id: str, metric: str, value: float) -> List[AlertEvaluation]:
        """Evaluate every active alert of the tenant watching ``metric``."""
        results = []
        for alert in self.repository.for_tenant(tenant_id):
            if not alert.is_active or alert.metric != metric:
                continue
            evaluation = self._evaluate_alert(alert, value)
            results.append(evaluation)
            for observer in list(self._observers):
                try:
                    observer(alert, evaluation)
                except Exception as e:
                    self.logger.error("Alert observer failed", alert_id=alert.alert_id, error=str(e))
        return results

    def resolve(self, alert_id: str) -> bool:
        """Manually resolve an alert. Resolving a non-firing alert is a no-op."""
        alert = self.repository.get(alert_id)
        if alert is None:
            return False

        if alert.state == AlertState.TRIGGERED:
            now = self.clock.now()
            alert.resolved_at = now
            self._record_event(alert, AlertEvent(AlertOutcome.RESOLVED, now, manual=True))
            self._count_transition(alert, "manual_resolved")
            self.logger.info("Alert resolved manually", alert_id=alert_id, tenant_id=alert.tenant_id)
        return True

    async def sweep(self) -> int:
        """Re-evaluate active alerts against recent values. Returns transitions."""
        if self.metric_store is None:
            return 0

        since = self.clock.now() - self.sweep_lookback_seconds
        targets: Dict[Tuple[str, str], None] = {}
        for alert in self.repository.all():
            if alert.is_active:
                targets[(alert.tenant_id, alert.metric)] = None

        transitions = 0
        for tenant_id, metric in targets:
            point = await self.metric_store.latest(tenant_id, metric, since=since)
            if point is None:
                continue
            for evaluation in self.evaluate(tenant_id, metric, point.value):
                if evaluation.outcome != AlertOutcome.NO_OP:
                    transitions += 1

        self.logger.debug("Alert sweep finished", series=len(targets), transitions=transitions)
        return transitions

    async def _on_metric(self, point: MetricPoint) -> None:
        self.evaluate(point.tenant_id, point.name, point.value)

    def _evaluate_alert(self, alert: Alert, value: float) -> AlertEvaluation:
        try:
            breached = condition_breached(alert.condition, value)
        except AlertConditionError as e:
            self.logger.warning(
                "Malformed alert condition, treating as not breached",
                alert_id=alert.alert_id,
                tenant_id=alert.tenant_id,
                error=e.message,
            )
            breached = False

        state = alert.state
        now = self.clock.now()

        if breached and state != AlertState.TRIGGERED:
            alert.triggered_at = now
            alert.resolved_at = None
            self._record_event(alert, AlertEvent(AlertOutcome.TRIGGERED, now, value=value))
            self._count_transition(alert, "triggered")
            self.logger.warning(
                "Alert triggered",
                alert_id=alert.alert_id,
                alert_name=alert.name,
                tenant_id=alert.tenant_id,
                severity=alert.severity.value,
                value=value,
            )
            self._notify(alert, value)
            outcome = AlertOutcome.TRIGGERED
        elif not breached and state == AlertState.TRIGGERED:
            alert.resolved_at = now
            self._record_event(alert, AlertEvent(AlertOutcome.RESOLVED, now, value=value))
            self._count_transition(alert, "resolved")
            self.logger.info("Alert auto-resolved", alert_id=alert.alert_id, tenant_id=alert.tenant_id, value=value)
            outcome = AlertOutcome.RESOLVED
        else:
            outcome = AlertOutcome.NO_OP

        return AlertEvaluation(alert_id=alert.alert_id, outcome=outcome, value=value, breached=breached)

    def _notify(self, alert: Alert, value: float):
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.publish(AlertNotification.from_alert(alert, value))
        except Exception as e:
            self.logger.error("Failed to publish alert notification", alert_id=alert.alert_id, error=str(e))

    def _record_event(self, alert: Alert, event: AlertEvent):
        alert.history.append(event)
        if len(alert.history) > self.history_limit:
            del alert.history[: len(alert.history) - self.history_limit]

    def _count_transition(self, alert: Alert, transition: str):
        if self.metrics:
            self.metrics.increment_counter(
                "alert_transitions_total",
                transition=transition,
                severity=alert.severity.value,
            )


DEFAULT_ALERTS = [
    AlertConfig(
        name="High API Response Time",
        description="API response time is above 2 seconds",
        metric="api.response_time",
        condition=ConditionOperator.GREATER_THAN,
        threshold=2000,
        severity=AlertSeverity.HIGH,
    ),
    AlertConfig(
        name="High Error Rate",
        description="Error rate is above 5%",
        metric="system.error_rate",
        condition=ConditionOperator.GREATER_THAN,
        threshold=5,
        severity=AlertSeverity.CRITICAL,
    ),
    AlertConfig(
        name="Low Cache Hit Rate",
        description="Cache hit rate is below 70%",
        metric="system.cache_hit_rate",
        condition=ConditionOperator.LESS_THAN,
        threshold=70,
        severity=AlertSeverity.MEDIUM,
    ),
]


def setup_default_alerts(engine: AlertEngine, tenant_id: str) -> List[str]:
    """Install the stock alerts for a tenant."""
    return [engine.create_from_config(tenant_id, config) for config in DEFAULT_ALERTS]
