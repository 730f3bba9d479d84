"""
Observability package for the Dex operator.

Provides structured logging, Prometheus metrics, health checks and
optional OpenTelemetry tracing.
"""
