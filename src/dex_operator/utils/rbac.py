"""
Process-wide RBAC for the Dex servers managed by this operator.

Every DexServer's service account is bound (per namespace) to one shared
cluster role. The role is installed once at operator startup; failing to
install it is fatal for the process.
"""

import logging

from ..constants import CLUSTER_ROLE_NAME
from .applier import ManifestApplier
from .kubernetes import ResourceStore

logger = logging.getLogger(__name__)


async def install_cluster_role(store: ResourceStore) -> None:
    """Create or update the cluster role used by Dex service accounts."""
    applier = ManifestApplier(store)
    await applier.apply_direct(
        ["dex-server/cluster_role.yaml"], {"cluster_role_name": CLUSTER_ROLE_NAME}
    )
    logger.info(f"Cluster role {CLUSTER_ROLE_NAME} installed")
