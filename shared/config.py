"""
Shared configuration management for the Tenant Infrastructure Core.

Every setting can be overridden with a ``CORE_``-prefixed environment variable,
e.g. ``CORE_REDIS_URL`` or ``CORE_METRIC_RETENTION_HOURS``.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CORE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    redis_url: str = Field(default="redis://localhost:6379/0")
    storage_backend: Literal["memory", "redis"] = Field(default="memory")

    # Metric store
    metric_max_points_per_series: int = Field(default=1000, gt=0)
    metric_retention_hours: int = Field(default=24, gt=0)
    metric_prune_interval_seconds: float = Field(default=3600.0, gt=0)

    # Alerts
    alert_sweep_interval_seconds: float = Field(default=60.0, gt=0)
    alert_sweep_lookback_seconds: float = Field(default=300.0, gt=0)
    alert_webhook_url: Optional[str] = Field(default=None)
    notification_queue_size: int = Field(default=1000, gt=0)

    # Health / cache aggregation
    health_check_interval_seconds: float = Field(default=30.0, gt=0)

    # Cache
    cache_default_ttl_seconds: int = Field(default=3600, gt=0)

    # Gateway
    api_configs_file: Optional[str] = Field(default=None)
    load_default_apis: bool = Field(default=True)
    http_user_agent: str = Field(default="TenantInfraCore/1.0")
    default_timeout_ms: int = Field(default=10000, gt=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
