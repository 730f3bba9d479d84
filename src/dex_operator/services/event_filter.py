"""
Event filtering for the DexServer watches.

Three predicate families decide which watch events enqueue a convergence pass:

- DexServer changes: creations always, updates only when the finalizers or
  the spec changed, so the operator's own status writes do not re-trigger it.
- Owned deployment updates: a rolling restart stamps the pod template and
  the deployment controller then emits a burst of updates for the rollout.
  RestartFilter remembers the generation at which a restart was seen and
  suppresses updates until the deployment moves past that generation.
- Credential secrets: updates to secrets carrying the idp-credential label.
"""

import copy
import logging
import threading
from typing import Any

from ..constants import DEXSERVER_KIND, IDP_CREDENTIAL_LABEL, RESTARTED_AT_ANNOTATION

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


def _meta(obj: dict[str, Any] | None) -> dict[str, Any]:
    return (obj or {}).get("metadata") or {}


def object_key(obj: dict[str, Any]) -> str:
    meta = _meta(obj)
    return f"{meta.get('namespace', '')}:{meta.get('name', '')}"


def dexserver_owner(obj: dict[str, Any]) -> tuple[str, str] | None:
    """Return (namespace, name) of the DexServer owning ``obj``, if any."""
    meta = _meta(obj)
    owners = meta.get("ownerReferences") or []
    if not owners or owners[0].get("kind") != DEXSERVER_KIND:
        return None
    return meta.get("namespace", ""), owners[0]["name"]


def spec_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """True if the finalizer list or the spec differ between two revisions."""
    old_finalizers = _meta(old).get("finalizers") or []
    new_finalizers = _meta(new).get("finalizers") or []
    return old_finalizers != new_finalizers or (old.get("spec") or {}) != (
        new.get("spec") or {}
    )


def has_credential_label(obj: dict[str, Any]) -> bool:
    return IDP_CREDENTIAL_LABEL in (_meta(obj).get("labels") or {})


def _restart_stamp(deployment: dict[str, Any]) -> tuple[bool, str | None]:
    template_meta = (
        (deployment.get("spec") or {}).get("template", {}).get("metadata") or {}
    )
    annotations = template_meta.get("annotations") or {}
    return bool(annotations), annotations.get(RESTARTED_AT_ANNOTATION)


class RestartFilter:
    """
    Suppresses deployment updates caused by a rolling restart.

    State lives for the lifetime of the process and is shared by every watch
    callback, so access is serialised with a lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._in_progress: dict[str, int] = {}

    def in_progress(self) -> dict[str, int]:
        """Snapshot of namespace:name -> generation of restarts being ignored."""
        with self._lock:
            return dict(self._in_progress)

    def forget(self, obj: dict[str, Any]) -> None:
        with self._lock:
            self._in_progress.pop(object_key(obj), None)

    def admit_update(self, old: dict[str, Any], new: dict[str, Any]) -> bool:
        if dexserver_owner(old) is None:
            return False

        key = object_key(new)
        generation = _meta(new).get("generation")

        with self._lock:
            recorded = self._in_progress.get(key)
            if recorded is not None:
                if recorded == generation:
                    logger.debug(f"Ignoring update to {key}: restart in progress")
                    return False
                logger.debug(f"New generation {generation} for {key}, restart finished")
                del self._in_progress[key]

            _, new_stamp = _restart_stamp(new)
            if new_stamp is not None:
                old_has_annotations, old_stamp = _restart_stamp(old)
                if not old_has_annotations or new_stamp != old_stamp:
                    self._in_progress[key] = generation
                    logger.debug(f"Restart detected for {key} at generation {generation}")
                    return False

        return True


class LastSeenCache:
    """
    Remembers the last revision of each watched object.

    Watch callbacks only see the current revision; this cache supplies the
    previous one so update predicates can compare old and new.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._objects: dict[tuple[str, str], dict[str, Any]] = {}

    def observe(
        self, resource: str, event_type: str | None, obj: dict[str, Any]
    ) -> tuple[str, dict[str, Any] | None]:
        """
        Record a watch event and classify it.

        Args:
            resource: Watched resource plural, to keep kinds apart
            event_type: Raw watch event type (ADDED, MODIFIED, DELETED, or
                None for the initial listing)
            obj: The object carried by the event

        Returns:
            Tuple of (create/update/delete, previous revision or None)
        """
        key = (resource, object_key(obj))
        with self._lock:
            previous = self._objects.get(key)
            if event_type == "DELETED":
                self._objects.pop(key, None)
                return DELETE, previous
            self._objects[key] = copy.deepcopy(obj)

        if event_type == "MODIFIED" and previous is not None:
            return UPDATE, previous
        return CREATE, None

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


class EventFilter:
    """Predicates gating which watch events enqueue a convergence pass."""

    def __init__(self, restart_filter: RestartFilter | None = None, metrics: Any = None):
        self.restart_filter = restart_filter or RestartFilter()
        self.metrics = metrics

    def _record(self, predicate: str, admitted: bool) -> bool:
        if self.metrics is not None:
            self.metrics.record_filtered_event(predicate, admitted)
        return admitted

    def admit_dexserver(
        self, event: str, old: dict[str, Any] | None, new: dict[str, Any]
    ) -> bool:
        if event == CREATE:
            admitted = True
        elif event == UPDATE and old is not None:
            admitted = spec_changed(old, new)
        else:
            admitted = False
        return self._record("dexserver_spec", admitted)

    def admit_owned_deployment(
        self, event: str, old: dict[str, Any] | None, new: dict[str, Any]
    ) -> bool:
        if event == UPDATE and old is not None:
            admitted = self.restart_filter.admit_update(old, new)
        else:
            if event == DELETE:
                self.restart_filter.forget(new)
            admitted = dexserver_owner(new) is not None
        return self._record("deployment_restart", admitted)

    def admit_owned_resource(self, event: str, obj: dict[str, Any]) -> bool:
        return self._record("owned_resource", dexserver_owner(obj) is not None)

    def admit_credential_secret(self, event: str, new: dict[str, Any]) -> bool:
        return self._record(
            "credential_secret", event == UPDATE and has_credential_label(new)
        )
