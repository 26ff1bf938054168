"""
FastAPI Service Factory - Object-Oriented Factory Pattern
Creates the feedback suite FastAPI application with CORS, Prometheus metrics
and a database-backed health check.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[None]]


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ServiceMetrics:
    """Encapsulates Prometheus metrics for a service."""

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.registry = CollectorRegistry()

        self.request_count = Counter(
            "service_requests_total",
            "Total HTTP requests handled by the service",
            ["service", "method", "path", "http_status"],
            registry=self.registry,
        )

        self.request_latency = Histogram(
            "service_request_duration_seconds",
            "Request latency in seconds",
            ["service", "path"],
            registry=self.registry,
        )

        self.business_metrics: List[Counter] = []

    def record_request(self, method: str, path: str, status_code: int, duration: float):
        """Record a request metric."""
        self.request_count.labels(
            service=self.service_name,
            method=method,
            path=path,
            http_status=status_code,
        ).inc()

        self.request_latency.labels(
            service=self.service_name,
            path=path,
        ).observe(duration)

    def get_metrics_prometheus(self) -> str:
        """Get Prometheus-formatted metrics."""
        return generate_latest(self.registry).decode("utf-8")


class CORSMiddlewareConfig:
    """Configuration for CORS middleware. Browser extensions call from any origin."""

    def __init__(
        self,
        allow_origins: List[str] = None,
        allow_credentials: bool = False,
        allow_methods: List[str] = None,
        allow_headers: List[str] = None,
    ):
        self.allow_origins = allow_origins or ["*"]
        # "*" is only echoed literally when credentials are off
        self.allow_credentials = allow_credentials
        self.allow_methods = allow_methods or ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
        self.allow_headers = allow_headers or ["Content-Type", "Authorization"]


class ServiceAppConfig:
    """Configuration for creating a service FastAPI app."""

    def __init__(
        self,
        title: str,
        description: str,
        service_name: str,
        version: str = "1.0.0",
        cors_config: Optional[CORSMiddlewareConfig] = None,
        enable_metrics: bool = True,
        health_check: Optional[HealthCheck] = None,
        lifespan=None,
    ):
        self.title = title
        self.description = description
        self.service_name = service_name
        self.version = version
        self.cors_config = cors_config or CORSMiddlewareConfig()
        self.enable_metrics = enable_metrics
        self.health_check = health_check
        self.lifespan = lifespan


class FastAPIServiceFactory:
    """
    Factory class for creating standardized FastAPI service applications.

    This factory encapsulates the common setup logic (CORS, metrics, health)
    so the service module can focus on its routes.
    """

    def __init__(self, config: ServiceAppConfig):
        """
        Initialize the factory with service configuration.

        Args:
            config: ServiceAppConfig containing all service-specific settings
        """
        self.config = config
        self.metrics = ServiceMetrics(config.service_name) if config.enable_metrics else None

    def create_app(self) -> FastAPI:
        """
        Factory method: Creates and configures a FastAPI application.

        Returns:
            Fully configured FastAPI app ready for route registration
        """
        app = FastAPI(
            title=self.config.title,
            description=self.config.description,
            version=self.config.version,
            lifespan=self.config.lifespan,
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.cors_config.allow_origins,
            allow_credentials=self.config.cors_config.allow_credentials,
            allow_methods=self.config.cors_config.allow_methods,
            allow_headers=self.config.cors_config.allow_headers,
        )

        self._add_health_endpoint(app)

        if self.config.enable_metrics and self.metrics:
            self._add_metrics_middleware(app)
            self._add_metrics_endpoint(app)

        app.state.metrics = self.metrics
        app.state.service_name = self.config.service_name

        return app

    def _add_metrics_middleware(self, app: FastAPI):
        """Add Prometheus metrics middleware to the app."""
        metrics = self.metrics

        @app.middleware("http")
        async def prometheus_middleware(request: Request, call_next):
            start = time.time()
            response = await call_next(request)
            duration = time.time() - start

            # Route template keeps label cardinality bounded (/feedback/{feedback_id})
            route = request.scope.get("route")
            path = getattr(route, "path", None) or request.url.path

            metrics.record_request(
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration=duration,
            )

            return response

    def _add_metrics_endpoint(self, app: FastAPI):
        """Add /metrics endpoint for Prometheus scraping."""
        metrics = self.metrics

        @app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=metrics.get_metrics_prometheus(),
                media_type=CONTENT_TYPE_LATEST,
            )

    def _add_health_endpoint(self, app: FastAPI):
        """Add /health endpoint; runs the configured check (database ping)."""
        service_name = self.config.service_name
        version = self.config.version
        health_check = self.config.health_check

        @app.get("/health")
        async def health():
            """
            Health check endpoint.

            Returns:
                200 with status "healthy", or 503 with the failure reason
            """
            if health_check is not None:
                try:
                    await health_check()
                except Exception as e:
                    logger.error(f"Health check failed: {e}")
                    return JSONResponse(
                        status_code=503,
                        content={"status": "unhealthy", "error": str(e), "timestamp": _iso_now()},
                    )
            return {
                "status": "healthy",
                "timestamp": _iso_now(),
                "service": service_name,
                "version": version,
            }

    def add_business_metric(self, name: str, description: str, labels: List[str] = None) -> Counter:
        """
        Add a business-specific metric counter.

        Args:
            name: Metric name
            description: Metric description
            labels: Optional list of label names

        Returns:
            Counter object that can be used to increment metrics
        """
        if not self.metrics:
            raise ValueError("Metrics not enabled for this service")

        counter = Counter(
            name,
            description,
            labels or [],
            registry=self.metrics.registry,
        )
        self.metrics.business_metrics.append(counter)
        return counter
