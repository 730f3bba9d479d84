"""
Error handling module for the Dex operator.

This module provides the error hierarchy shared by the convergence engine,
with categories matching how each failure is surfaced and retried.
"""

from .operator_errors import (
    CertificateError,
    ConfigurationError,
    ConflictError,
    KubernetesAPIError,
    NotFoundError,
    OperatorError,
    ReconciliationError,
    ValidationError,
)

__all__ = [
    "OperatorError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "KubernetesAPIError",
    "ConfigurationError",
    "CertificateError",
    "ReconciliationError",
]
