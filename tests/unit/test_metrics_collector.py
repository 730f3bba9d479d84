"""
Unit tests for MetricsCollector methods in observability/metrics.py.

Tests the individual methods of MetricsCollector to verify they call the
correct Prometheus metric objects with the correct label values.
"""

from unittest.mock import MagicMock, patch

import pytest

from dex_operator.errors import NotFoundError, ReconciliationError
from dex_operator.observability.metrics import MetricsCollector


@pytest.fixture
def collector():
    """Create a MetricsCollector with the registry init patched out."""
    with patch(
        "dex_operator.observability.metrics.get_metrics_registry",
        return_value=MagicMock(),
    ):
        return MetricsCollector()


class TestTrackReconciliation:
    """Test the convergence pass context manager."""

    @pytest.mark.asyncio
    @patch("dex_operator.observability.metrics.RECONCILIATION_DURATION")
    @patch("dex_operator.observability.metrics.RECONCILIATION_TOTAL")
    async def test_success(self, mock_total, mock_duration, collector):
        """A completed pass is counted as success and timed."""
        async with collector.track_reconciliation("idp", "dex"):
            pass

        mock_total.labels.assert_called_with(namespace="idp", name="dex", result="success")
        mock_total.labels().inc.assert_called_once()
        mock_duration.labels.assert_called_with(namespace="idp")
        mock_duration.labels().observe.assert_called_once()

    @pytest.mark.asyncio
    @patch("dex_operator.observability.metrics.RECONCILIATION_DURATION")
    @patch("dex_operator.observability.metrics.RECONCILIATION_ERRORS")
    @patch("dex_operator.observability.metrics.RECONCILIATION_TOTAL")
    async def test_step_failure(self, mock_total, mock_errors, mock_duration, collector):
        """A failed step records its reason and the underlying error type."""
        cause = NotFoundError("Secret", "github-secret", "idp")
        error = ReconciliationError(
            "failed", step="sync ConfigMap", reason="ConfigMapFailed", cause=cause
        )

        with pytest.raises(ReconciliationError):
            async with collector.track_reconciliation("idp", "dex"):
                raise error

        mock_errors.labels.assert_called_with(
            namespace="idp", reason="ConfigMapFailed", error_type="NotFoundError"
        )
        mock_errors.labels().inc.assert_called_once()
        mock_total.labels.assert_called_with(namespace="idp", name="dex", result="error")

    @pytest.mark.asyncio
    @patch("dex_operator.observability.metrics.RECONCILIATION_DURATION")
    @patch("dex_operator.observability.metrics.RECONCILIATION_ERRORS")
    @patch("dex_operator.observability.metrics.RECONCILIATION_TOTAL")
    async def test_unexpected_error(self, mock_total, mock_errors, mock_duration, collector):
        """Errors without a reason are recorded as Unknown."""
        with pytest.raises(RuntimeError):
            async with collector.track_reconciliation("idp", "dex"):
                raise RuntimeError("boom")

        mock_errors.labels.assert_called_with(
            namespace="idp", reason="Unknown", error_type="RuntimeError"
        )


class TestMetricsCollectorMTLS:
    """Test mutual-TLS credential metric methods."""

    @patch("dex_operator.observability.metrics.MTLS_EXPIRY_TIMESTAMP")
    @patch("dex_operator.observability.metrics.MTLS_REGENERATIONS")
    def test_record_mtls_regeneration(self, mock_regens, mock_expiry, collector):
        """A regeneration counts the cause and updates the expiry gauge."""
        collector.record_mtls_regeneration("idp", "expiring", 1717059600.0)
        mock_regens.labels.assert_called_with(namespace="idp", cause="expiring")
        mock_regens.labels().inc.assert_called_once()
        mock_expiry.labels.assert_called_with(namespace="idp")
        mock_expiry.labels().set.assert_called_with(1717059600.0)

    @patch("dex_operator.observability.metrics.MTLS_REGENERATIONS")
    @patch("dex_operator.observability.metrics.MTLS_EXPIRY_TIMESTAMP")
    def test_record_mtls_expiry(self, mock_expiry, mock_regens, collector):
        """An untouched bundle only refreshes the expiry gauge."""
        collector.record_mtls_expiry("idp", 1717059600.0)
        mock_expiry.labels().set.assert_called_with(1717059600.0)
        mock_regens.labels.assert_not_called()


class TestMetricsCollectorQueue:
    """Test event filter and queue metric methods."""

    @patch("dex_operator.observability.metrics.FILTERED_EVENTS")
    def test_record_filtered_event_admitted(self, mock_events, collector):
        collector.record_filtered_event("dexserver_spec", admitted=True)
        mock_events.labels.assert_called_with(predicate="dexserver_spec", verdict="admitted")

    @patch("dex_operator.observability.metrics.FILTERED_EVENTS")
    def test_record_filtered_event_suppressed(self, mock_events, collector):
        collector.record_filtered_event("deployment_restart", admitted=False)
        mock_events.labels.assert_called_with(
            predicate="deployment_restart", verdict="suppressed"
        )

    @patch("dex_operator.observability.metrics.QUEUE_DEPTH")
    def test_set_queue_depth(self, mock_depth, collector):
        collector.set_queue_depth(3)
        mock_depth.set.assert_called_with(3)
