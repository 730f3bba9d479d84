"""
Operator error hierarchy with categorization and retry logic.

This module defines the error types used throughout the Dex operator,
providing clear categorization and integration with kopf's retry mechanisms.
"""

import kopf


class OperatorError(Exception):
    """
    Base error class for all operator-related exceptions.

    Provides categorization, retry behavior, and user guidance for resolution.
    """

    def __init__(
        self,
        message: str,
        category: str,
        retryable: bool = True,
        delay: int = 30,
        user_action: str | None = None,
        cause: Exception | None = None,
    ):
        """
        Initialize operator error.

        Args:
            message: Human-readable error description
            category: Error category (not_found, conflict, api, configuration, validation)
            retryable: Whether the operation should be retried
            delay: Suggested retry delay in seconds
            user_action: What user should do to resolve the issue
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.retryable = retryable
        self.delay = delay
        self.user_action = user_action
        self.cause = cause

    def as_kopf_error(self):
        """Convert to appropriate kopf exception type."""
        if self.retryable:
            return kopf.TemporaryError(str(self), delay=self.delay)
        else:
            return kopf.PermanentError(str(self))

    def __str__(self) -> str:
        """Enhanced string representation with user guidance."""
        base_msg = super().__str__()
        if self.user_action:
            return f"{base_msg}\nAction required: {self.user_action}"
        return base_msg


class ValidationError(OperatorError):
    """Error in resource specification validation."""

    def __init__(
        self, message: str, field: str | None = None, user_action: str | None = None
    ):
        action = user_action or "Check resource specification and fix validation errors"
        if field:
            message = f"Validation error in field '{field}': {message}"
        super().__init__(
            message=message, category="validation", retryable=False, user_action=action
        )


class NotFoundError(OperatorError):
    """A resource the operator needs does not exist (yet)."""

    def __init__(self, kind: str, name: str, namespace: str | None = None):
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(
            message=f"{kind} {location} not found",
            category="not_found",
            retryable=True,
            user_action=f"Create {kind} {location} or fix the reference to it",
        )
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ConflictError(OperatorError):
    """A version-checked write lost against a concurrent change."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            category="conflict",
            retryable=True,
            delay=1,
            cause=cause,
        )


class KubernetesAPIError(OperatorError):
    """Error communicating with Kubernetes API."""

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        retryable: bool = True,
        cause: Exception | None = None,
    ):
        if reason:
            message = f"{message} (reason: {reason})"

        # Some K8s errors are not retryable
        non_retryable_reasons = {"Forbidden", "Unauthorized", "Invalid"}
        if reason in non_retryable_reasons:
            retryable = False

        super().__init__(
            message=message,
            category="api",
            retryable=retryable,
            delay=60,
            user_action="Check RBAC permissions and cluster connectivity",
            cause=cause,
        )


class ConfigurationError(OperatorError):
    """Error in operator or resource configuration."""

    def __init__(
        self, message: str, retryable: bool = False, user_action: str | None = None
    ):
        super().__init__(
            message=message,
            category="configuration",
            retryable=retryable,
            user_action=user_action or "Review and correct configuration",
        )


class CertificateError(OperatorError):
    """Failure while generating or encoding mutual-TLS credentials."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            category="certificate",
            retryable=True,
            cause=cause,
        )


class ReconciliationError(OperatorError):
    """Error raised when a convergence pass stops at one of its steps."""

    def __init__(
        self,
        message: str,
        step: str | None = None,
        reason: str | None = None,
        retryable: bool = True,
        delay: int = 60,
        cause: Exception | None = None,
    ):
        super().__init__(
            message=message,
            category="reconciliation",
            retryable=retryable,
            delay=delay,
            user_action="Inspect the DexServer status conditions and operator logs",
            cause=cause,
        )
        self.step = step
        self.reason = reason
