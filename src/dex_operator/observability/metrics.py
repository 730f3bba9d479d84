"""
Prometheus metrics for the Dex operator.

This module provides metrics for convergence passes, mutual-TLS credential
renewal, event filtering and the reconcile work queue, plus the HTTP server
that exposes them.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

# aiohttp comes with kopf; the metrics server reuses it instead of adding
# another HTTP stack.
from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_metrics_registry: CollectorRegistry | None = None

RECONCILIATION_TOTAL = Counter(
    "dex_operator_reconciliation_total",
    "Total number of convergence passes",
    ["namespace", "name", "result"],
    registry=None,
)

RECONCILIATION_DURATION = Histogram(
    "dex_operator_reconciliation_duration_seconds",
    "Time spent in convergence passes",
    ["namespace"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=None,
)

RECONCILIATION_ERRORS = Counter(
    "dex_operator_reconciliation_errors_total",
    "Total number of convergence passes that stopped at a step",
    ["namespace", "reason", "error_type"],
    registry=None,
)

MTLS_REGENERATIONS = Counter(
    "dex_operator_mtls_regenerations_total",
    "Mutual-TLS credential bundles written, by cause",
    ["namespace", "cause"],
    registry=None,
)

MTLS_EXPIRY_TIMESTAMP = Gauge(
    "dex_operator_mtls_expiry_timestamp_seconds",
    "Unix timestamp at which the gRPC server certificate expires",
    ["namespace"],
    registry=None,
)

FILTERED_EVENTS = Counter(
    "dex_operator_filtered_events_total",
    "Watch events evaluated by the event filter",
    ["predicate", "verdict"],
    registry=None,
)

QUEUE_DEPTH = Gauge(
    "dex_operator_work_queue_depth",
    "DexServers waiting for a convergence pass",
    [],
    registry=None,
)


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry

    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()
        for metric in [
            RECONCILIATION_TOTAL,
            RECONCILIATION_DURATION,
            RECONCILIATION_ERRORS,
            MTLS_REGENERATIONS,
            MTLS_EXPIRY_TIMESTAMP,
            FILTERED_EVENTS,
            QUEUE_DEPTH,
        ]:
            _metrics_registry.register(metric)

    return _metrics_registry


class MetricsCollector:
    """Collects and manages metrics for the Dex operator."""

    def __init__(self):
        self.registry = get_metrics_registry()

    @asynccontextmanager
    async def track_reconciliation(self, namespace: str, name: str):
        """
        Context manager to track one convergence pass.

        Args:
            namespace: Namespace of the DexServer
            name: Name of the DexServer
        """
        start_time = time.time()
        result = "unknown"

        try:
            yield
            result = "success"
        except Exception as e:
            result = "error"
            RECONCILIATION_ERRORS.labels(
                namespace=namespace,
                reason=getattr(e, "reason", None) or "Unknown",
                error_type=type(getattr(e, "cause", None) or e).__name__,
            ).inc()
            raise
        finally:
            RECONCILIATION_TOTAL.labels(
                namespace=namespace, name=name, result=result
            ).inc()
            RECONCILIATION_DURATION.labels(namespace=namespace).observe(
                time.time() - start_time
            )

    def record_mtls_regeneration(
        self, namespace: str, cause: str, expiry_timestamp: float
    ) -> None:
        MTLS_REGENERATIONS.labels(namespace=namespace, cause=cause).inc()
        MTLS_EXPIRY_TIMESTAMP.labels(namespace=namespace).set(expiry_timestamp)

    def record_mtls_expiry(self, namespace: str, expiry_timestamp: float) -> None:
        MTLS_EXPIRY_TIMESTAMP.labels(namespace=namespace).set(expiry_timestamp)

    def record_filtered_event(self, predicate: str, admitted: bool) -> None:
        FILTERED_EVENTS.labels(
            predicate=predicate, verdict="admitted" if admitted else "suppressed"
        ).inc()

    def set_queue_depth(self, depth: int) -> None:
        QUEUE_DEPTH.set(depth)


class MetricsServer:
    """HTTP server for exposing Prometheus metrics."""

    def __init__(self, port: int = 8081, host: str = "0.0.0.0"):
        """
        Initialize metrics server.

        Args:
            port: Port to serve metrics on
            host: Host interface to bind to
        """
        self.port = port
        self.host = host
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_get("/ready", self._ready_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)

    async def _metrics_handler(self, request: Request) -> Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        try:
            metrics_data = generate_latest(get_metrics_registry())
            return Response(body=metrics_data, content_type=CONTENT_TYPE_LATEST)
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _health_handler(self, request: Request) -> Response:
        """Handle /health endpoint for operator health checks."""
        from .health import HealthChecker

        health_checker = HealthChecker()
        health_results = await health_checker.check_all()
        health_dict = health_checker.to_dict(health_results)
        status_code = 200 if health_dict["status"] == "healthy" else 503
        return json_response(health_dict, status=status_code)

    async def _ready_handler(self, request: Request) -> Response:
        """Handle /ready endpoint for readiness probes."""
        from .health import HealthChecker

        health_checker = HealthChecker()
        results = await health_checker.check_all()
        checks: dict[str, Any] = {name: r.status for name, r in results.items()}
        ready = health_checker.get_overall_health(results) == "healthy"
        return json_response(
            {
                "status": "ready" if ready else "not_ready",
                "timestamp": time.time(),
                "checks": checks,
            },
            status=200 if ready else 503,
        )

    async def _healthz_handler(self, request: Request) -> Response:
        """Handle /healthz endpoint for Kubernetes compatibility."""
        return Response(text="ok")

    async def start(self) -> None:
        """Start the metrics server."""
        self.runner = AppRunner(self.app)
        await self.runner.setup()

        self.site = TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Metrics server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the metrics server."""
        try:
            if self.site:
                await self.site.stop()
                self.site = None

            if self.runner:
                await self.runner.cleanup()
                self.runner = None

            logger.info("Metrics server stopped")
        except Exception as e:
            logger.error(f"Error stopping metrics server: {e}")


# Global metrics collector instance
metrics_collector = MetricsCollector()
