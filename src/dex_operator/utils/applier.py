"""
Create-or-update of rendered manifest templates.

ManifestApplier renders named templates, tags each result with a controller
owner reference back to the DexServer, and converges the live object:

- absent objects are created
- objects that already contain every desired field are left alone, so a
  pass over unchanged desired state performs no writes
- anything else is updated in place against the live resourceVersion
"""

import copy
import logging
from collections.abc import Iterable
from typing import Any

from ..constants import RESTARTED_AT_ANNOTATION
from .kubernetes import ResourceStore, set_owner_reference
from .manifests import render

logger = logging.getLogger(__name__)


def contains(live: Any, desired: Any) -> bool:
    """Return True if every field set in ``desired`` has the same value in ``live``."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        for key, value in desired.items():
            if key not in live:
                if value in ({}, [], None):
                    continue
                return False
            if not contains(live[key], value):
                return False
        return True
    if isinstance(desired, list):
        return (
            isinstance(live, list)
            and len(live) == len(desired)
            and all(contains(lv, dv) for lv, dv in zip(live, desired, strict=True))
        )
    return live == desired


def merge(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Overlay desired fields onto a copy of the live object; lists are replaced."""
    result = copy.deepcopy(live)
    for key, value in desired.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class ManifestApplier:
    """Applies named templates on behalf of one owning DexServer."""

    def __init__(self, store: ResourceStore, owner: dict[str, Any] | None = None):
        self.store = store
        self.owner = owner

    def _render(self, name: str, values: dict[str, Any]) -> dict[str, Any]:
        manifest = render(name, values)
        if self.owner is not None:
            set_owner_reference(manifest, self.owner)
        return manifest

    async def apply_direct(
        self, template_refs: Iterable[str], values: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Apply core and RBAC resources through their typed APIs."""
        return [
            await self._apply(self._render(ref, values)) for ref in template_refs
        ]

    async def apply_deployment(
        self, template_refs: Iterable[str], values: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """
        Apply deployments.

        The pod template is authoritative as rendered, except for a rolling
        restart stamp already present on the live object, which is carried
        over so an apply never reverts a restart in progress.
        """
        results = []
        for ref in template_refs:
            manifest = self._render(ref, values)
            results.append(await self._apply(manifest, replace_template=True))
        return results

    async def apply_custom_resource(
        self, template_refs: Iterable[str], values: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Apply resources through the generic custom-objects endpoint."""
        return [
            await self._apply(self._render(ref, values), generic=True)
            for ref in template_refs
        ]

    async def _apply(
        self,
        manifest: dict[str, Any],
        generic: bool = False,
        replace_template: bool = False,
    ) -> dict[str, Any]:
        kind = manifest["kind"]
        meta = manifest["metadata"]
        name, namespace = meta["name"], meta.get("namespace")

        live = await self.store.get_optional(kind, name, namespace, generic=generic)
        if live is None:
            logger.info(f"Creating {kind} {namespace or ''}/{name}")
            return await self.store.create(manifest, generic=generic)

        if replace_template:
            _carry_restart_stamp(live, manifest)

        up_to_date = contains(live, manifest)
        if up_to_date and replace_template:
            # A dropped pod annotation must still reach the live template.
            up_to_date = _pod_annotations(live) == _pod_annotations(manifest)
        if up_to_date:
            logger.debug(f"{kind} {namespace or ''}/{name} is up to date")
            return live

        updated = merge(live, manifest)
        if replace_template:
            updated["spec"]["template"] = copy.deepcopy(manifest["spec"]["template"])
        logger.info(f"Updating {kind} {namespace or ''}/{name}")
        return await self.store.update(updated, generic=generic)


def _pod_annotations(deployment: dict[str, Any]) -> dict[str, str]:
    return (
        deployment.get("spec", {}).get("template", {}).get("metadata", {}).get("annotations")
        or {}
    )


def _carry_restart_stamp(live: dict[str, Any], manifest: dict[str, Any]) -> None:
    stamp = _pod_annotations(live).get(RESTARTED_AT_ANNOTATION)
    if stamp is None:
        return
    pod_meta = manifest["spec"]["template"].setdefault("metadata", {})
    pod_meta.setdefault("annotations", {})[RESTARTED_AT_ANNOTATION] = stamp
