"""
Structured logging for the Tenant Infrastructure Core.

Every event is rendered as one JSON line carrying the service name, the
active OpenTelemetry trace/span ids and the request and tenant bound to the
current task by ``bind_request_context``.
"""

import logging
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar('tenant_id', default=None)

_service_name: Optional[str] = None


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog and the stdlib root logger for ``service_name``."""
    global _service_name
    _service_name = service_name

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            add_trace_context,
            add_correlation_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # Component loggers are named "<service>.<component>"
    logger_name = event_dict.get("logger") or ""
    service = logger_name.split(".")[0] if "." in logger_name else _service_name
    if service:
        event_dict.setdefault("service", service)
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    # An explicit tenant_id on the event wins over the request's tenant
    tenant_id = tenant_id_var.get()
    if tenant_id and "tenant_id" not in event_dict:
        event_dict["tenant_id"] = tenant_id
    return event_dict


@dataclass
class RequestContext:
    """Correlation ids bound for one request, restorable with ``reset``."""

    request_id: str
    tenant_id: Optional[str]
    _request_token: Token
    _tenant_token: Token

    def reset(self) -> None:
        tenant_id_var.reset(self._tenant_token)
        request_id_var.reset(self._request_token)


def bind_request_context(request_id: Optional[str] = None, tenant_id: Optional[str] = None) -> RequestContext:
    """Bind request and tenant ids to the current task, generating a request id if absent."""
    request_id = request_id or str(uuid.uuid4())
    return RequestContext(
        request_id=request_id,
        tenant_id=tenant_id,
        _request_token=request_id_var.set(request_id),
        _tenant_token=tenant_id_var.set(tenant_id or None),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
