"""Centralized operator settings using pydantic-settings.

This module provides a single source of truth for all operator configuration
loaded from environment variables. Uses pydantic for automatic validation,
type coercion, and documentation.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Operator configuration loaded from environment variables.

    All settings have sensible defaults for production use except the Dex
    image, which must be supplied by the deployment.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Dex server image
    dex_image: str = Field(
        default="",
        description="Container image reference for the Dex server",
        validation_alias="RELATED_IMAGE_DEX",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        validation_alias="JSON_LOGS",
        description="Enable JSON formatted logging for structured log aggregation",
    )
    correlation_ids: bool = Field(
        default=True,
        validation_alias="CORRELATION_IDS",
        description="Enable correlation IDs in logs for request tracing",
    )
    log_health_probes: bool = Field(
        default=False,
        validation_alias="LOG_HEALTH_PROBES",
        description="Log health probe and metrics requests",
    )

    # Namespace watching
    namespaces: str = Field(
        default="",
        validation_alias="DEX_OPERATOR_NAMESPACES",
        description="Comma-separated list of namespaces to watch (empty = all namespaces)",
    )

    # Metrics and observability
    metrics_port: int = Field(
        default=8081,
        validation_alias="METRICS_PORT",
        description="Port for Prometheus metrics endpoint",
    )
    metrics_host: str = Field(
        default="0.0.0.0",
        validation_alias="METRICS_HOST",
        description="Host address to bind metrics server",
    )
    tracing_enabled: bool = Field(
        default=False,
        validation_alias="TRACING_ENABLED",
        description="Export OpenTelemetry traces for convergence passes",
    )
    tracing_endpoint: str = Field(
        default="http://localhost:4317",
        validation_alias="TRACING_ENDPOINT",
        description="OTLP gRPC collector endpoint",
    )
    tracing_sample_rate: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        validation_alias="TRACING_SAMPLE_RATE",
        description="Fraction of root spans to sample",
    )

    # Mutual TLS credentials
    mtls_ca_validity_days: int = Field(
        default=365,
        gt=0,
        validation_alias="MTLS_CA_VALIDITY_DAYS",
        description="Validity of the generated gRPC CA certificate",
    )
    mtls_cert_validity_days: int = Field(
        default=90,
        gt=0,
        validation_alias="MTLS_CERT_VALIDITY_DAYS",
        description="Validity of the generated gRPC server and client certificates",
    )
    mtls_renewal_window_hours: int = Field(
        default=24,
        ge=0,
        validation_alias="MTLS_RENEWAL_WINDOW_HOURS",
        description="Regenerate the gRPC credentials this long before they expire",
    )
    mtls_key_size: int = Field(
        default=2048,
        ge=2048,
        validation_alias="MTLS_KEY_SIZE",
        description="RSA key size for generated credentials",
    )

    # Reconciliation behavior
    reconcile_requeue_seconds: float = Field(
        default=3600.0,
        gt=0,
        validation_alias="RECONCILE_REQUEUE_SECONDS",
        description="Delay before a successfully converged DexServer is re-evaluated",
    )
    reconcile_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        validation_alias="RECONCILE_TIMEOUT_SECONDS",
        description="Deadline for a single convergence pass",
    )
    reconcile_workers: int = Field(
        default=4,
        ge=1,
        validation_alias="RECONCILE_WORKERS",
        description="Number of DexServers converged concurrently",
    )
    reconcile_backoff_base_seconds: float = Field(
        default=1.0,
        gt=0,
        validation_alias="RECONCILE_BACKOFF_BASE_SECONDS",
        description="Initial retry delay after a failed pass",
    )
    reconcile_backoff_max_seconds: float = Field(
        default=300.0,
        gt=0,
        validation_alias="RECONCILE_BACKOFF_MAX_SECONDS",
        description="Upper bound on the retry delay after repeated failures",
    )
    api_request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="API_REQUEST_TIMEOUT_SECONDS",
        description="Timeout for individual Kubernetes API requests",
    )

    @property
    def watched_namespaces(self) -> list[str] | None:
        """Parse watched namespaces from comma-separated string.

        Returns:
            List of namespace names, or None to watch all namespaces
        """
        if self.namespaces:
            return [ns.strip() for ns in self.namespaces.split(",") if ns.strip()]
        return None


# Global settings instance - initialized once at module import
settings = Settings()
