"""
Service layer for the Dex operator.

This module provides the convergence engine and its collaborators, separated
from the kopf handler layer.
"""

from .certificate_manager import CertificateManager
from .dex_config import DexConfigRenderer
from .dexserver_reconciler import DexServerReconciler, ReconcileResult, run_worker
from .event_filter import EventFilter, LastSeenCache, RestartFilter
from .work_queue import QueueShutDown, ReconcileQueue, request_key

__all__ = [
    "CertificateManager",
    "DexConfigRenderer",
    "DexServerReconciler",
    "ReconcileResult",
    "run_worker",
    "EventFilter",
    "LastSeenCache",
    "RestartFilter",
    "QueueShutDown",
    "ReconcileQueue",
    "request_key",
]
