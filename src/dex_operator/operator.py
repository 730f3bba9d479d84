#!/usr/bin/env python3
"""
Dex Operator - Main entry point for the kopf-based Dex server operator.

This operator keeps a Dex identity provider deployment converged with each
DexServer resource:
- mTLS credentials for the Dex gRPC API, renewed before they expire
- Dex configuration rendered from connector specs and their secrets
- Services, RBAC, deployment and ingress for the Dex server
- Status conditions reporting the outcome of every pass

Usage:
    python -m dex_operator.operator
    # Or with kopf directly:
    kopf run -m dex_operator.operator --all-namespaces

Environment Variables:
    RELATED_IMAGE_DEX: Dex server image (required)
    DEX_OPERATOR_NAMESPACES: Comma-separated list of namespaces to watch
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

import asyncio
import logging
import random
import sys
from datetime import timedelta

import kopf

from dex_operator.constants import PEERING_NAME
from dex_operator.errors import ConfigurationError

# Importing the handler module registers its decorators with kopf
from dex_operator.handlers import dexserver  # noqa: F401
from dex_operator.observability.health import HealthChecker
from dex_operator.observability.logging import setup_structured_logging
from dex_operator.observability.metrics import MetricsServer, metrics_collector
from dex_operator.observability.tracing import setup_tracing, shutdown_tracing
from dex_operator.services import (
    CertificateManager,
    DexServerReconciler,
    EventFilter,
    LastSeenCache,
    ReconcileQueue,
    run_worker,
)
from dex_operator.settings import settings as operator_settings
from dex_operator.utils.kubernetes import ResourceStore, get_kubernetes_client
from dex_operator.utils.rbac import install_cluster_role

# Global reference to metrics server for cleanup
_global_metrics_server: MetricsServer | None = None


def configure_logging() -> None:
    """Configure structured logging for the operator based on operator_settings."""
    setup_structured_logging(
        log_level=operator_settings.log_level.upper(),
        enable_json_formatting=operator_settings.json_logs,
        correlation_id_enabled=operator_settings.correlation_ids,
        log_health_probes=operator_settings.log_health_probes,
    )


def get_watched_namespaces() -> list[str] | None:
    return operator_settings.watched_namespaces


def build_reconciler(store: ResourceStore) -> DexServerReconciler:
    """Wire the convergence engine from operator settings."""
    certificate_manager = CertificateManager(
        store,
        ca_validity=timedelta(days=operator_settings.mtls_ca_validity_days),
        cert_validity=timedelta(days=operator_settings.mtls_cert_validity_days),
        renewal_window=timedelta(hours=operator_settings.mtls_renewal_window_hours),
        key_size=operator_settings.mtls_key_size,
        metrics=metrics_collector,
    )
    return DexServerReconciler(
        store,
        certificate_manager,
        dex_image=operator_settings.dex_image,
        requeue_after=operator_settings.reconcile_requeue_seconds,
        pass_timeout=operator_settings.reconcile_timeout_seconds,
        metrics=metrics_collector,
    )


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, memo: kopf.Memo, **_
) -> None:
    """
    Operator startup configuration.

    Fails the operator when the Dex image is not configured or the shared
    cluster role cannot be installed. Everything else (metrics, tracing)
    degrades to a warning.
    """
    logging.info("Starting Dex Operator...")
    settings.watching.reconnect_backoff = 1.0

    # Each pod gets a unique priority to enable leader election
    settings.peering.name = PEERING_NAME
    settings.peering.priority = random.randint(0, 32767)
    logging.info(
        f"Peering priority set to {settings.peering.priority} for leader election"
    )

    watched_namespaces = get_watched_namespaces()
    if watched_namespaces:
        logging.info(f"Watching namespaces: {', '.join(watched_namespaces)}")
    else:
        logging.info("Watching all namespaces (cluster-wide mode)")

    if not operator_settings.dex_image:
        error = ConfigurationError(
            "required environment variable RELATED_IMAGE_DEX is empty or not set",
            user_action="Set RELATED_IMAGE_DEX on the operator deployment",
        )
        logging.error(error.message)
        raise error.as_kopf_error()

    store = ResourceStore(
        get_kubernetes_client(),
        request_timeout=operator_settings.api_request_timeout_seconds,
    )
    try:
        await install_cluster_role(store)
    except Exception as e:
        logging.error(f"Failed to install cluster role: {e}")
        raise kopf.PermanentError(f"Failed to install cluster role: {e}") from e

    try:
        metrics_server = MetricsServer(
            port=operator_settings.metrics_port, host=operator_settings.metrics_host
        )
        await metrics_server.start()
        logging.info(
            f"Metrics and health endpoints available on {operator_settings.metrics_host}:{operator_settings.metrics_port}"
        )
        global _global_metrics_server
        _global_metrics_server = metrics_server
    except Exception as e:
        logging.error(f"Failed to start metrics server: {e}")
        logging.warning("Continuing without metrics server")

    setup_tracing(
        enabled=operator_settings.tracing_enabled,
        endpoint=operator_settings.tracing_endpoint,
        sample_rate=operator_settings.tracing_sample_rate,
    )

    queue = ReconcileQueue(
        backoff_base=operator_settings.reconcile_backoff_base_seconds,
        backoff_max=operator_settings.reconcile_backoff_max_seconds,
        on_depth_change=metrics_collector.set_queue_depth,
    )
    reconciler = build_reconciler(store)

    memo.store = store
    memo.queue = queue
    memo.event_filter = EventFilter(metrics=metrics_collector)
    memo.last_seen = LastSeenCache()
    memo.workers = [
        asyncio.create_task(run_worker(queue, reconciler, worker_id=i))
        for i in range(operator_settings.reconcile_workers)
    ]
    logging.info(f"Started {len(memo.workers)} reconcile workers")


@kopf.on.cleanup()
async def cleanup_handler(memo: kopf.Memo, **_) -> None:
    """Stop the reconcile workers, the metrics server and tracing."""
    logging.info("Shutting down Dex Operator...")

    workers = getattr(memo, "workers", None) or []
    queue = getattr(memo, "queue", None)
    if queue is not None:
        queue.shutdown(len(workers))
    if workers:
        try:
            await asyncio.wait_for(
                asyncio.gather(*workers, return_exceptions=True),
                timeout=operator_settings.reconcile_timeout_seconds,
            )
        except TimeoutError:
            logging.warning("Reconcile workers did not stop in time, cancelling")
            for task in workers:
                task.cancel()

    global _global_metrics_server
    if _global_metrics_server:
        try:
            await _global_metrics_server.stop()
            logging.info("Metrics server stopped")
        except Exception as e:
            logging.error(f"Error stopping metrics server: {e}")
        _global_metrics_server = None

    shutdown_tracing()


@kopf.on.probe(id="healthz")
async def health_check(**_) -> dict[str, str]:
    """
    Health check probe for Kubernetes liveness checks.

    Returns:
        Dictionary indicating operator health status
    """
    try:
        health_checker = HealthChecker()
        health_results = await health_checker.check_all()
        overall_health = health_checker.get_overall_health(health_results)

        timestamp = "unknown"
        k8s_result = health_results.get("kubernetes_api")
        if k8s_result is not None and k8s_result.timestamp is not None:
            timestamp = str(k8s_result.timestamp)

        return {
            "status": overall_health,
            "operator": "dex-operator",
            "timestamp": timestamp,
        }
    except Exception as e:
        logging.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "operator": "dex-operator", "error": str(e)}


@kopf.on.probe(id="ready")
async def readiness_check(**_) -> dict[str, str]:
    """Readiness probe: the Kubernetes API is reachable and the CRD is installed."""
    try:
        health_checker = HealthChecker()
        api = await health_checker._check_kubernetes_api()
        crds = await health_checker._check_crds_installed()

        if api.status == "healthy" and crds.status == "healthy":
            return {"status": "ready", "operator": "dex-operator"}
        return {"status": "not_ready", "operator": "dex-operator"}

    except Exception as e:
        logging.error(f"Readiness check failed: {e}")
        return {"status": "not_ready", "operator": "dex-operator", "error": str(e)}


def main() -> None:
    """Configure logging and run kopf on the configured namespaces."""
    configure_logging()

    watched_namespaces = get_watched_namespaces()

    try:
        if watched_namespaces:
            kopf.run(
                namespaces=watched_namespaces,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
            )
        else:
            kopf.run(
                clusterwide=True,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
            )
    except KeyboardInterrupt:
        logging.info("Received shutdown signal")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Operator failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
