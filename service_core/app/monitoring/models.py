"""
Data models for metrics, alerts and system health.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class TimeRange:
    """Inclusive ``[start, end]`` range of epoch seconds."""
    start: float
    end: float

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp <= self.end


@dataclass
class MetricPoint:
    """A single metric data point."""
    tenant_id: str
    name: str
    timestamp: float
    value: float
    tags: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "name": self.name,
            "timestamp": self.timestamp,
            "value": self.value,
            "tags": dict(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricPoint":
        return cls(
            tenant_id=data["tenant_id"],
            name=data["name"],
            timestamp=float(data["timestamp"]),
            value=float(data["value"]),
            tags=dict(data.get("tags") or {}),
        )


@dataclass
class MetricSummary:
    """Aggregate view of one series."""
    name: str
    count: int = 0
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    avg_value: Optional[float] = None
    last_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "min": self.min_value,
            "max": self.max_value,
            "avg": self.avg_value,
            "last": self.last_value,
        }


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConditionOperator(str, Enum):
    """Comparison applied between a metric value and the threshold."""
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"


class AlertState(str, Enum):
    """Derived lifecycle state."""
    UNTRIGGERED = "untriggered"
    TRIGGERED = "triggered"
    RESOLVED = "resolved"


class AlertOutcome(str, Enum):
    """Result of evaluating one alert against one value."""
    NO_OP = "no-op"
    TRIGGERED = "triggered"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class AlertCondition:
    """Operator plus threshold.

    Kept loosely typed: conditions loaded from configuration may be malformed,
    and the engine treats those as never breaching.
    """
    operator: Any
    threshold: Any

    def to_dict(self) -> Dict[str, Any]:
        operator = self.operator.value if isinstance(self.operator, Enum) else self.operator
        return {"operator": operator, "threshold": self.threshold}


@dataclass
class AlertEvent:
    """Audit record of a lifecycle transition."""
    outcome: AlertOutcome
    timestamp: float
    value: Optional[float] = None
    manual: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "timestamp": self.timestamp,
            "value": self.value,
            "manual": self.manual,
        }


@dataclass
class Alert:
    """Threshold alert on one tenant metric.

    Alerts are never deleted. A resolved alert stays active and re-triggers
    on the next breach.
    """
    alert_id: str
    tenant_id: str
    name: str
    metric: str
    condition: AlertCondition
    severity: AlertSeverity
    created_at: float
    description: str = ""
    is_active: bool = True
    triggered_at: Optional[float] = None
    resolved_at: Optional[float] = None
    history: List[AlertEvent] = field(default_factory=list)

    @property
    def state(self) -> AlertState:
        if self.triggered_at is None:
            return AlertState.UNTRIGGERED
        if self.resolved_at is None:
            return AlertState.TRIGGERED
        return AlertState.RESOLVED

    @property
    def is_firing(self) -> bool:
        return self.is_active and self.state == AlertState.TRIGGERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.alert_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "metric": self.metric,
            "condition": self.condition.to_dict(),
            "severity": self.severity.value,
            "created_at": self.created_at,
            "is_active": self.is_active,
            "triggered_at": self.triggered_at,
            "resolved_at": self.resolved_at,
            "state": self.state.value,
            "history": [event.to_dict() for event in self.history],
        }


@dataclass(frozen=True)
class AlertEvaluation:
    """Outcome of evaluating one alert."""
    alert_id: str
    outcome: AlertOutcome
    value: float
    breached: bool


class AlertConfig(BaseModel):
    """Per-alert configuration."""

    name: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    condition: ConditionOperator
    threshold: float
    severity: AlertSeverity = AlertSeverity.MEDIUM
    description: str = ""


class HealthStatus(str, Enum):
    """Overall tenant health."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class SystemHealth:
    """Point-in-time health snapshot for one tenant."""
    tenant_id: str
    status: HealthStatus
    checked_at: float
    uptime_seconds: float
    cache_hit_rate: float
    error_rate: float
    firing_alerts: int
    metrics: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "checked_at": self.checked_at,
            "uptime_seconds": self.uptime_seconds,
            "cache_hit_rate": self.cache_hit_rate,
            "error_rate": self.error_rate,
            "firing_alerts": self.firing_alerts,
            "metrics": dict(self.metrics),
        }
