"""
Base class for the Secrets Portal HTTP services.

Owns the process-level concerns every service shares: logging and tracing
setup, the FastAPI app, request logging with correlation ids, the health and
Prometheus endpoints, and the mapping from PortalError to HTTP responses.
"""

import os
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared.config import PortalConfig, get_config
from shared.errors import ErrorResponse, PortalError
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.tracing import configure_tracing

VERSION = "1.0.0"
CORRELATION_HEADER = "X-Correlation-Id"


def request_correlation_id(request: Request) -> Optional[str]:
    """Correlation id the request middleware assigned, if it ran."""
    return getattr(request.state, "correlation_id", None)


class BaseService:
    """Common wiring for a portal service process."""

    def __init__(self, service_name: str, config: Optional[PortalConfig] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name
        self.config = config or get_config()
        self.metrics = metrics or get_metrics_collector(self.config.service_name)
        self._started = time.monotonic()

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(service_name)

        if self.config.enable_tracing:
            configure_tracing(
                service_name,
                self.config.otel_exporter,
                enable_console=self.config.enable_console_tracing,
            )

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        local = self.config.env == "local"
        return FastAPI(
            title="Secrets Portal",
            description=f"Secrets Portal - {self.service_name}",
            version=VERSION,
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
        )

    def _setup_middleware(self):
        # the portal UI is served from another origin only in local development
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def log_request(request: Request, call_next):
            correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
            request.state.correlation_id = correlation_id
            started = time.perf_counter()

            response = await call_next(request)

            response.headers[CORRELATION_HEADER] = correlation_id
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                correlation_id=correlation_id,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return response

    def _setup_routes(self):
        """Health, metrics and error handlers."""

        @self.app.get("/health")
        async def health_check():
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)},
                )
            return {
                "service": self.service_name,
                "status": "ok",
                "env": self.config.env,
                "uptime_seconds": round(time.monotonic() - self._started, 3),
                "dependencies": dependencies,
                "version": VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST,
            )

        @self.app.exception_handler(PortalError)
        async def portal_error_handler(request: Request, exc: PortalError):
            log = self.logger.error if exc.http_status >= 500 else self.logger.info
            log(
                "Request failed",
                path=request.url.path,
                code=exc.code,
                message=exc.message,
                details=exc.details,
            )
            return JSONResponse(status_code=exc.http_status, content=exc.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def unhandled_error_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
            body = ErrorResponse(code="INTERNAL_ERROR", message="Internal server error")
            return JSONResponse(status_code=500, content=body.model_dump())

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Dependency status for /health. Override in subclasses."""
        return {}

    def run(self):
        """Serve the app with uvicorn."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
