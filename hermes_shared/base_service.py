"""
Base service class for Hermes services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from typing import Dict, Optional
import time
import os

from hermes_shared.config import RelaySettings, get_config
from hermes_shared.logging import configure_logging, get_logger, set_request_id, clear_context
from hermes_shared.metrics import get_metrics_collector
from hermes_shared.errors import RelayException

SERVICE_VERSION = "0.1.0"


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, settings: Optional[RelaySettings] = None):
        self.service_name = service_name
        self.config = settings or get_config()
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level, self.config.log_format)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Hermes - {self.service_name.title()} Service",
            version=SERVICE_VERSION,
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()

            try:
                response = await call_next(request)
            finally:
                clear_context()

            duration = time.time() - start_time
            endpoint = self._metrics_endpoint_label(request)

            self.metrics.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code,
                duration=duration
            )

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                request_id=request_id
            )

            response.headers["X-Request-ID"] = request_id
            return response

    def _metrics_endpoint_label(self, request: Request) -> str:
        """Label used for HTTP metrics. Override to bound cardinality."""
        return request.url.path

    def _setup_routes(self):
        """Set up common routes."""

        if self.config.health_check_enabled:
            @self.app.get("/health")
            async def health_check():
                """Liveness check. Performs no dependency checks."""
                self.metrics.record_health_check("ok")
                return {
                    "service": self.service_name,
                    "status": "healthy",
                    "timestamp": int(time.time()),
                    "uptime_seconds": self._get_uptime(),
                    "version": SERVICE_VERSION,
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }

            @self.app.get("/ready")
            async def readiness_check():
                """Readiness check."""
                checks = await self._check_readiness()
                ready = all(value == "ok" for value in checks.values())
                self.metrics.record_health_check("ready" if ready else "not_ready")
                body = {
                    "status": "ready" if ready else "not_ready",
                    "checks": checks
                }
                if ready:
                    return body
                return JSONResponse(status_code=503, content=body)

        @self.app.exception_handler(RelayException)
        async def relay_exception_handler(request: Request, exc: RelayException):
            """Handle RelayException."""
            self.logger.warning(
                "Relay error",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            self.metrics.record_error(exc.code)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump()
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    def _setup_metrics_route(self):
        """Expose the Prometheus registry at /metrics."""

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import CONTENT_TYPE_LATEST
            return Response(
                content=self.metrics.render_latest(),
                media_type=CONTENT_TYPE_LATEST
            )

    async def _check_readiness(self) -> Dict[str, str]:
        """Readiness checks. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return round(time.time() - self._start_time, 3)
