"""
DexServer watch handlers - turn watch events into queued convergence passes.

kopf event handlers act as the event sources only. They classify each event
with the last-seen cache, run it through the event filter and, when admitted,
put the affected DexServer key on the work queue. The passes themselves run in
the reconcile workers started by the operator.

The handlers find their collaborators on the operator memo:
    memo.queue        ReconcileQueue
    memo.event_filter EventFilter
    memo.last_seen    LastSeenCache
    memo.store        ResourceStore
"""

import logging
from typing import Any

import kopf

from dex_operator.constants import (
    DEXSERVER_GROUP,
    DEXSERVER_PLURAL,
    DEXSERVER_VERSION,
    IDP_CREDENTIAL_LABEL,
    OPERATOR_LABEL_KEY,
    OPERATOR_LABEL_VALUE,
)
from dex_operator.errors import OperatorError
from dex_operator.services.event_filter import DELETE, dexserver_owner
from dex_operator.services.work_queue import request_key

logger = logging.getLogger(__name__)

OWNED_SELECTOR = {OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE}


def _observe(memo: Any, resource: str, event: dict[str, Any]) -> tuple[str, Any, Any]:
    obj = event["object"]
    kind, previous = memo.last_seen.observe(resource, event.get("type"), obj)
    return kind, previous, obj


def _enqueue_owner(memo: Any, obj: dict[str, Any]) -> None:
    owner = dexserver_owner(obj)
    if owner is not None:
        memo.queue.add(request_key(*owner))


@kopf.on.event(DEXSERVER_GROUP, DEXSERVER_VERSION, DEXSERVER_PLURAL)
async def on_dexserver_event(event: dict[str, Any], memo: Any, **_) -> None:
    """Enqueue DexServers on creation and on spec or finalizer changes."""
    kind, previous, obj = _observe(memo, DEXSERVER_PLURAL, event)
    meta = obj.get("metadata") or {}
    key = request_key(meta.get("namespace", ""), meta.get("name", ""))

    if kind == DELETE:
        memo.queue.forget(key)
        logger.debug(f"DexServer {key} deleted")
        return

    if memo.event_filter.admit_dexserver(kind, previous, obj):
        memo.queue.add(key)


@kopf.on.event("", "v1", "configmaps", labels=OWNED_SELECTOR)
@kopf.on.event("", "v1", "services", labels=OWNED_SELECTOR)
@kopf.on.event("", "v1", "serviceaccounts", labels=OWNED_SELECTOR)
@kopf.on.event("networking.k8s.io", "v1", "ingresses", labels=OWNED_SELECTOR)
async def on_owned_resource_event(
    event: dict[str, Any], memo: Any, resource: Any, **_
) -> None:
    """Enqueue the owning DexServer when a derived resource changes."""
    kind, _previous, obj = _observe(memo, resource.plural, event)
    if memo.event_filter.admit_owned_resource(kind, obj):
        _enqueue_owner(memo, obj)


@kopf.on.event("", "v1", "secrets", labels=OWNED_SELECTOR)
async def on_owned_secret_event(event: dict[str, Any], memo: Any, **_) -> None:
    """Enqueue the owning DexServer when the mTLS bundle changes."""
    kind, _previous, obj = _observe(memo, "secrets/owned", event)
    if memo.event_filter.admit_owned_resource(kind, obj):
        _enqueue_owner(memo, obj)


@kopf.on.event("apps", "v1", "deployments", labels=OWNED_SELECTOR)
async def on_owned_deployment_event(event: dict[str, Any], memo: Any, **_) -> None:
    """Enqueue the owning DexServer, ignoring the churn of a rolling restart."""
    kind, previous, obj = _observe(memo, "deployments", event)
    if memo.event_filter.admit_owned_deployment(kind, previous, obj):
        _enqueue_owner(memo, obj)


@kopf.on.event("", "v1", "secrets", labels={IDP_CREDENTIAL_LABEL: kopf.PRESENT})
async def on_credential_secret_event(event: dict[str, Any], memo: Any, **_) -> None:
    """
    Enqueue every DexServer when a labelled credential secret is updated.

    Secrets are not linked to the DexServers that reference them, so an
    update fans out to all of them and each pass re-reads what it needs.
    """
    kind, _previous, obj = _observe(memo, "secrets/credentials", event)
    if not memo.event_filter.admit_credential_secret(kind, obj):
        return

    meta = obj.get("metadata") or {}
    try:
        dexservers = await memo.store.list("DexServer")
    except OperatorError as e:
        logger.error(
            f"Failed to list DexServers for credential secret "
            f"{meta.get('namespace')}/{meta.get('name')}: {e.message}"
        )
        return

    logger.info(
        f"Credential secret {meta.get('namespace')}/{meta.get('name')} changed, "
        f"enqueueing {len(dexservers)} DexServer(s)"
    )
    for dexserver in dexservers:
        ds_meta = dexserver.get("metadata") or {}
        memo.queue.add(request_key(ds_meta.get("namespace", ""), ds_meta["name"]))
