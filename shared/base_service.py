"""
FastAPI service shell shared by the core services.

``BaseService`` owns the app, request correlation, HTTP metrics, the
``/health`` and ``/metrics`` routes and the error handlers. Subclasses add
their routes and report dependency state from ``_check_dependencies``.
"""

import os
import time
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from shared.config import ServiceConfig, get_config
from shared.errors import CoreLayerException, ServiceError
from shared.logging import bind_request_context, configure_logging, get_logger
from shared.metrics import get_metrics_collector

SERVICE_VERSION = "1.0.0"
REQUEST_ID_HEADER = "X-Request-ID"
TENANT_HEADER = "X-Tenant-ID"

# Dependency states that make /health report "degraded"
UNHEALTHY_DEPENDENCY_STATES = frozenset({"error", "unavailable"})


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        configure_logging(service_name, self.config.log_level)

        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()
        self._setup_error_handlers()

    def _create_app(self) -> FastAPI:
        local = self.config.env == "local"
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Tenant Infrastructure Core - {self.service_name.title()} Service",
            version=SERVICE_VERSION,
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
        )

    def _setup_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def request_context(request: Request, call_next):
            context = bind_request_context(
                request.headers.get(REQUEST_ID_HEADER),
                request.headers.get(TENANT_HEADER),
            )
            start_time = time.perf_counter()
            try:
                response = await call_next(request)
                duration = time.perf_counter() - start_time
                endpoint = self._route_template(request)

                self.metrics.record_http_request(request.method, endpoint, response.status_code, duration)
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                )
                response.headers[REQUEST_ID_HEADER] = context.request_id
                return response
            finally:
                context.reset()

    @staticmethod
    def _route_template(request: Request) -> str:
        """Matched route path (``/api/v1/alerts/{alert_id}``), else the raw path."""
        route = request.scope.get("route")
        return getattr(route, "path", None) or request.url.path

    def _setup_routes(self):

        @self.app.get("/health")
        async def health_check():
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)},
                )

            unhealthy = sorted(name for name, state in dependencies.items() if state in UNHEALTHY_DEPENDENCY_STATES)
            status = "degraded" if unhealthy else "ok"
            self.metrics.record_health_check(status)
            return {
                "service": self.service_name,
                "status": status,
                "unhealthy": unhealthy,
                "uptime_seconds": self._get_uptime(),
                "dependencies": dependencies,
                "version": SERVICE_VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            return Response(content=self.metrics.export(), media_type=CONTENT_TYPE_LATEST)

    def _setup_error_handlers(self):

        @self.app.exception_handler(CoreLayerException)
        async def core_layer_exception_handler(request: Request, exc: CoreLayerException):
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log("Request failed", code=exc.code, message=exc.message, details=exc.details, path=request.url.path)
            self.metrics.record_error(exc.code)
            return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def unhandled_exception_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
            error = ServiceError("Internal server error")
            self.metrics.record_error(error.code)
            return JSONResponse(status_code=error.status_code, content=error.to_response().model_dump())

    async def _check_dependencies(self) -> Dict[str, str]:
        """Dependency name to state. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        return time.time() - self._start_time

    def run(self):
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
