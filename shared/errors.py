"""
Shared error handling for the Tenant Infrastructure Core.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class CoreLayerException(Exception):
    """Base exception for core infrastructure components."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(CoreLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ServiceError(CoreLayerException):
    """Unexpected internal errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class ConfigNotFoundError(CoreLayerException):
    """No API configuration exists for the tenant or as a default. Never retried."""

    status_code = 404

    def __init__(self, api_name: str, tenant_id: Optional[str] = None):
        super().__init__(
            "CONFIG_NOT_FOUND",
            f"API configuration not found: {api_name}",
            {"api_name": api_name, "tenant_id": tenant_id},
        )
        self.api_name = api_name


class RateLimitError(CoreLayerException):
    """Rate limiting errors. Callers should back off by ``reset_in_seconds``."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        reset_in_seconds: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if reset_in_seconds is not None:
            merged.setdefault("reset_in_seconds", reset_in_seconds)
        super().__init__("RATE_LIMIT_ERROR", message, merged)
        self.reset_in_seconds = reset_in_seconds


class TransientNetworkError(CoreLayerException):
    """Network failure or timeout talking to an upstream API."""

    status_code = 502

    def __init__(
        self,
        service: str,
        message: str = "Upstream unreachable",
        attempts: int = 1,
        last_exception: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        merged.setdefault("attempts", attempts)
        if last_exception is not None:
            merged.setdefault("last_error", f"{type(last_exception).__name__}: {last_exception}")
        super().__init__("TRANSIENT_NETWORK_ERROR", f"{service}: {message}", merged)
        self.attempts = attempts
        self.last_exception = last_exception


class ApplicationError(CoreLayerException):
    """Upstream answered with a non-2xx status. Deterministic, never retried."""

    status_code = 502

    def __init__(self, service: str, upstream_status: int, body: str = "", details: Optional[Dict[str, Any]] = None):
        merged = dict(details or {})
        merged.setdefault("upstream_status", upstream_status)
        merged.setdefault("body", body)
        super().__init__("APPLICATION_ERROR", f"{service}: HTTP {upstream_status}: {body}", merged)
        self.upstream_status = upstream_status


class CacheUnavailableError(CoreLayerException):
    """KV backend failure. Absorbed by the cache, never propagated to callers."""

    status_code = 503

    def __init__(self, message: str = "Cache backend unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_UNAVAILABLE", message, details)


class AlertConditionError(CoreLayerException):
    """Malformed alert condition or threshold. Evaluated as non-breach."""

    def __init__(self, message: str = "Malformed alert condition", details: Optional[Dict[str, Any]] = None):
        super().__init__("ALERT_CONDITION_ERROR", message, details)


class SerializationError(CoreLayerException):
    """Value cannot be serialized for the cache."""

    def __init__(self, message: str = "Value is not serializable", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERIALIZATION_ERROR", message, details)
