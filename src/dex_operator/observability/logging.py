"""
Structured logging for the Dex operator.

Each convergence pass gets a fresh correlation ID, carried in a context
variable, so every record a pass emits (including those from the applier
and the certificate manager) can be grouped in a log backend.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Probe and scrape endpoints served by kopf and the metrics server
HEALTH_PROBE_PATHS = frozenset({"/healthz", "/health", "/ready", "/metrics"})

STRUCTURED_FIELDS = (
    "resource_type",
    "resource_name",
    "namespace",
    "operation",
    "duration",
    "error_type",
    "step",
    "reason",
    "kind",
    "predicate",
)


class HealthProbeFilter(logging.Filter):
    """Drops records that mention a probe or metrics endpoint."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return all(path not in message for path in HEALTH_PROBE_PATHS)


class CorrelationIDFilter(logging.Filter):
    """Stamps the current correlation ID on every record, creating one if unset."""

    def filter(self, record: logging.LogRecord) -> bool:
        current = get_correlation_id()
        if not current:
            current = generate_correlation_id()
            correlation_id.set(current)

        record.correlation_id = current
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with the operator's structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, default=str)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())[:8]


def get_correlation_id() -> str:
    return correlation_id.get("")


def setup_structured_logging(
    log_level: str = "INFO",
    enable_json_formatting: bool = True,
    correlation_id_enabled: bool = True,
    log_health_probes: bool = False,
) -> None:
    """
    Replace the root handlers with one stream handler for the operator.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_json_formatting: Emit JSON records instead of plain text
        correlation_id_enabled: Stamp records with the pass correlation ID
        log_health_probes: Keep records about probe and metrics requests
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()

    if enable_json_formatting:
        formatter: logging.Formatter = StructuredFormatter()
    elif correlation_id_enabled:
        formatter = logging.Formatter(
            "%(asctime)s - %(correlation_id)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)

    if correlation_id_enabled:
        handler.addFilter(CorrelationIDFilter())

    if not log_health_probes:
        handler.addFilter(HealthProbeFilter())

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    logging.getLogger("kopf").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    # The metrics server's access log is mostly probe traffic
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class OperatorLogger:
    """Logger for convergence passes with structured extras."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_reconciliation_start(
        self, resource_type: str, resource_name: str, namespace: str
    ) -> None:
        """Log the start of a pass under a new correlation ID."""
        correlation_id.set(generate_correlation_id())

        self.logger.info(
            f"Starting reconciliation for {resource_type} {namespace}/{resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_start",
            },
        )

    def log_reconciliation_success(
        self, resource_type: str, resource_name: str, namespace: str, duration: float
    ) -> None:
        self.logger.info(
            f"Reconciliation completed successfully for {resource_type} {namespace}/{resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_success",
                "duration": duration,
            },
        )

    def log_step_failure(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        step: str,
        reason: str,
        error: Exception,
        duration: float,
    ) -> None:
        """
        Log a convergence step that stopped the pass.

        Operator errors are logged without a traceback; anything else gets one.

        Args:
            step: Description of the failed step
            reason: Condition reason recorded for the failure
            error: The error that occurred
            duration: Time spent in the pass so far, in seconds
        """
        self.logger.error(
            f"Failed to {step} for {resource_type} {namespace}/{resource_name}: {error}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": "reconcile_error",
                "step": step,
                "reason": reason,
                "error_type": type(error).__name__,
                "duration": duration,
            },
            exc_info=not hasattr(error, "category"),
        )

    def debug(self, message: str, **kwargs) -> None:
        self.logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs) -> None:
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs) -> None:
        self.logger.error(message, exc_info=exc_info, extra=kwargs)
