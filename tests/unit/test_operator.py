"""
Unit tests for the operator startup and cleanup handlers.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import kopf
import pytest

from dex_operator import operator
from dex_operator.errors import KubernetesAPIError
from dex_operator.services.work_queue import ReconcileQueue
from dex_operator.settings import settings as operator_settings

DEX_IMAGE = "quay.io/dexidp/dex:v2.37.0"


@pytest.fixture
def dex_image(monkeypatch):
    monkeypatch.setattr(operator_settings, "dex_image", DEX_IMAGE)
    monkeypatch.setattr(operator_settings, "reconcile_workers", 2)


@pytest.fixture
def metrics_server():
    server = MagicMock()
    server.start = AsyncMock()
    server.stop = AsyncMock()
    with patch("dex_operator.operator.MetricsServer", return_value=server):
        yield server


class TestStartupHandler:
    """Startup refuses to run without its prerequisites."""

    @pytest.mark.asyncio
    async def test_missing_image_is_fatal(self, monkeypatch):
        monkeypatch.setattr(operator_settings, "dex_image", "")
        install = AsyncMock()

        with (
            patch("dex_operator.operator.get_kubernetes_client") as get_client,
            patch("dex_operator.operator.install_cluster_role", install),
        ):
            with pytest.raises(kopf.PermanentError, match="RELATED_IMAGE_DEX"):
                await operator.startup_handler(
                    settings=kopf.OperatorSettings(), memo=kopf.Memo()
                )

        get_client.assert_not_called()
        install.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cluster_role_failure_is_fatal(self, dex_image):
        install = AsyncMock(
            side_effect=KubernetesAPIError(
                "Failed to create ClusterRole", reason="Forbidden", retryable=False
            )
        )
        memo = kopf.Memo()

        with (
            patch("dex_operator.operator.get_kubernetes_client", return_value=MagicMock()),
            patch("dex_operator.operator.install_cluster_role", install),
        ):
            with pytest.raises(kopf.PermanentError, match="Forbidden"):
                await operator.startup_handler(
                    settings=kopf.OperatorSettings(), memo=memo
                )

        install.assert_awaited_once()
        assert "workers" not in memo

    @pytest.mark.asyncio
    async def test_startup_wires_queue_and_workers(self, dex_image, metrics_server):
        memo = kopf.Memo()
        settings = kopf.OperatorSettings()

        with (
            patch("dex_operator.operator.get_kubernetes_client", return_value=MagicMock()),
            patch("dex_operator.operator.install_cluster_role", AsyncMock()),
            patch("dex_operator.operator.setup_tracing") as tracing,
        ):
            await operator.startup_handler(settings=settings, memo=memo)
            try:
                assert isinstance(memo.queue, ReconcileQueue)
                assert len(memo.workers) == 2
                assert not any(task.done() for task in memo.workers)
                assert settings.peering.name == operator.PEERING_NAME
                metrics_server.start.assert_awaited_once()
                tracing.assert_called_once()
            finally:
                await operator.cleanup_handler(memo=memo)

        assert all(task.done() for task in memo.workers)
        metrics_server.stop.assert_awaited_once()


class TestCleanupHandler:
    """Cleanup stops the workers before the process exits."""

    @pytest.mark.asyncio
    async def test_workers_stop_on_queue_shutdown(self):
        queue = ReconcileQueue(backoff_base=0.01, backoff_max=0.1)
        reconciler = MagicMock()
        reconciler.reconcile = AsyncMock()
        workers = [
            asyncio.create_task(operator.run_worker(queue, reconciler, worker_id=i))
            for i in range(3)
        ]
        await asyncio.sleep(0)
        memo = kopf.Memo(queue=queue, workers=workers)

        await operator.cleanup_handler(memo=memo)

        assert all(task.done() and not task.cancelled() for task in workers)
        reconciler.reconcile.assert_not_awaited()
        queue.add("idp/dex")
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_stuck_workers_are_cancelled(self, monkeypatch):
        monkeypatch.setattr(operator_settings, "reconcile_timeout_seconds", 0.05)
        stuck = asyncio.create_task(asyncio.sleep(60))
        memo = kopf.Memo(workers=[stuck])

        await operator.cleanup_handler(memo=memo)
        await asyncio.sleep(0)

        assert stuck.cancelled()

    @pytest.mark.asyncio
    async def test_cleanup_without_startup_state(self):
        await operator.cleanup_handler(memo=kopf.Memo())
