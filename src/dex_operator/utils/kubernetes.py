"""
Kubernetes utilities for the Dex operator.

This module provides helper functions for interacting with the Kubernetes API:
- Kubernetes client management and configuration
- ResourceStore: get/create/update/patch/list/status primitives over plain dicts
- Owner reference tagging for derived resources

Blocking client calls are moved to worker threads so a slow API round trip
for one DexServer does not stall the event loop serving the others.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..constants import (
    DEXSERVER_API_VERSION,
    DEXSERVER_KIND,
    DEXSERVER_PLURAL,
)
from ..errors import ConflictError, KubernetesAPIError, NotFoundError

logger = logging.getLogger(__name__)


def get_kubernetes_client() -> client.ApiClient:
    """
    Get configured Kubernetes API client.

    This function handles both in-cluster and local development configurations.
    """
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Loaded kubeconfig from local environment")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    return client.ApiClient()


@dataclass(frozen=True)
class KindInfo:
    """How to reach one resource kind through the API."""

    api_version: str
    plural: str
    namespaced: bool = True
    custom: bool = False

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]


KINDS: dict[str, KindInfo] = {
    "ConfigMap": KindInfo("v1", "configmaps"),
    "Secret": KindInfo("v1", "secrets"),
    "Service": KindInfo("v1", "services"),
    "ServiceAccount": KindInfo("v1", "serviceaccounts"),
    "ClusterRole": KindInfo("rbac.authorization.k8s.io/v1", "clusterroles", False),
    "ClusterRoleBinding": KindInfo(
        "rbac.authorization.k8s.io/v1", "clusterrolebindings", False
    ),
    "Deployment": KindInfo("apps/v1", "deployments"),
    "Ingress": KindInfo("networking.k8s.io/v1", "ingresses"),
    DEXSERVER_KIND: KindInfo(DEXSERVER_API_VERSION, DEXSERVER_PLURAL, custom=True),
}


def _snake_case(kind: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", kind).lower()


def set_owner_reference(manifest: dict[str, Any], owner: dict[str, Any]) -> None:
    """
    Set a controller owner reference for garbage collection.

    Args:
        manifest: Resource manifest to tag
        owner: The owning DexServer object
    """
    meta = owner["metadata"]
    owner_ref = {
        "apiVersion": owner.get("apiVersion", DEXSERVER_API_VERSION),
        "kind": owner.get("kind", DEXSERVER_KIND),
        "name": meta["name"],
        "uid": meta["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }
    refs = manifest.setdefault("metadata", {}).setdefault("ownerReferences", [])
    refs[:] = [ref for ref in refs if ref.get("uid") != owner_ref["uid"]]
    refs.append(owner_ref)


class ResourceStore:
    """
    Cluster resource primitives keyed by kind.

    Objects are exchanged as plain dicts in their JSON (camelCase) form.
    Failures are raised as NotFoundError (404), ConflictError (409) or
    KubernetesAPIError (everything else).
    """

    def __init__(
        self,
        k8s_client: client.ApiClient | None = None,
        request_timeout: float | None = None,
    ):
        self.k8s_client = k8s_client
        self.request_timeout = request_timeout
        self._apis: dict[str, Any] = {}

    @property
    def api_client(self) -> client.ApiClient:
        if self.k8s_client is None:
            self.k8s_client = get_kubernetes_client()
        return self.k8s_client

    def _api(self, api_version: str) -> Any:
        if api_version not in self._apis:
            factories = {
                "v1": client.CoreV1Api,
                "apps/v1": client.AppsV1Api,
                "rbac.authorization.k8s.io/v1": client.RbacAuthorizationV1Api,
                "networking.k8s.io/v1": client.NetworkingV1Api,
                "custom": client.CustomObjectsApi,
            }
            self._apis[api_version] = factories[api_version](self.api_client)
        return self._apis[api_version]

    @property
    def custom_objects(self) -> client.CustomObjectsApi:
        return self._api("custom")

    @staticmethod
    def kind_info(kind: str) -> KindInfo:
        try:
            return KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {kind}") from None

    async def _call(
        self,
        action: str,
        kind: str,
        name: str | None,
        namespace: str | None,
        fn: Any,
        /,
        **kwargs: Any,
    ) -> Any:
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        try:
            result = await asyncio.to_thread(fn, **kwargs)
        except ApiException as e:
            raise self._translate(e, action, kind, name, namespace) from e
        if isinstance(result, dict):
            return result
        return self.api_client.sanitize_for_serialization(result)

    @staticmethod
    def _translate(
        e: ApiException,
        action: str,
        kind: str,
        name: str | None,
        namespace: str | None,
    ) -> Exception:
        location = "/".join(part for part in (namespace, name) if part)
        if e.status == 404:
            return NotFoundError(kind, name or "", namespace)
        if e.status == 409:
            return ConflictError(
                f"Conflict while trying to {action} {kind} {location}: {e.reason}",
                cause=e,
            )
        retryable = e.status is None or e.status == 429 or e.status >= 500
        return KubernetesAPIError(
            f"Failed to {action} {kind} {location}",
            reason=e.reason,
            retryable=retryable,
            cause=e,
        )

    def _typed(self, verb: str, info: KindInfo, kind: str) -> Any:
        scope = "namespaced_" if info.namespaced else ""
        return getattr(self._api(info.api_version), f"{verb}_{scope}{_snake_case(kind)}")

    def _custom_kwargs(self, info: KindInfo, namespace: str | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "group": info.group,
            "version": info.version,
            "plural": info.plural,
        }
        if info.namespaced:
            kwargs["namespace"] = namespace
        return kwargs

    def _custom(self, verb: str, info: KindInfo) -> Any:
        scope = "namespaced" if info.namespaced else "cluster"
        return getattr(self.custom_objects, f"{verb}_{scope}_custom_object")

    async def get(
        self, kind: str, name: str, namespace: str | None = None, generic: bool = False
    ) -> dict[str, Any]:
        info = self.kind_info(kind)
        if info.custom or generic:
            return await self._call(
                "get", kind, name, namespace, self._custom("get", info),
                name=name, **self._custom_kwargs(info, namespace),
            )
        kwargs: dict[str, Any] = {"name": name}
        if info.namespaced:
            kwargs["namespace"] = namespace
        return await self._call(
            "get", kind, name, namespace, self._typed("read", info, kind), **kwargs
        )

    async def get_optional(
        self, kind: str, name: str, namespace: str | None = None, generic: bool = False
    ) -> dict[str, Any] | None:
        """Like get(), but returns None when the object does not exist."""
        try:
            return await self.get(kind, name, namespace, generic=generic)
        except NotFoundError:
            return None

    async def create(self, obj: dict[str, Any], generic: bool = False) -> dict[str, Any]:
        kind = obj["kind"]
        info = self.kind_info(kind)
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace")
        if info.custom or generic:
            return await self._call(
                "create", kind, name, namespace, self._custom("create", info),
                body=obj, **self._custom_kwargs(info, namespace),
            )
        kwargs: dict[str, Any] = {"body": obj}
        if info.namespaced:
            kwargs["namespace"] = namespace
        return await self._call(
            "create", kind, name, namespace, self._typed("create", info, kind), **kwargs
        )

    async def update(self, obj: dict[str, Any], generic: bool = False) -> dict[str, Any]:
        """Replace an object; the write is rejected if resourceVersion is stale."""
        kind = obj["kind"]
        info = self.kind_info(kind)
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace")
        if info.custom or generic:
            return await self._call(
                "update", kind, name, namespace, self._custom("replace", info),
                name=name, body=obj, **self._custom_kwargs(info, namespace),
            )
        kwargs: dict[str, Any] = {"name": name, "body": obj}
        if info.namespaced:
            kwargs["namespace"] = namespace
        return await self._call(
            "update", kind, name, namespace, self._typed("replace", info, kind), **kwargs
        )

    async def patch(
        self, kind: str, name: str, namespace: str | None, body: dict[str, Any]
    ) -> dict[str, Any]:
        info = self.kind_info(kind)
        if info.custom:
            return await self._call(
                "patch", kind, name, namespace, self._custom("patch", info),
                name=name, body=body, **self._custom_kwargs(info, namespace),
            )
        kwargs: dict[str, Any] = {"name": name, "body": body}
        if info.namespaced:
            kwargs["namespace"] = namespace
        return await self._call(
            "patch", kind, name, namespace, self._typed("patch", info, kind), **kwargs
        )

    async def list(self, kind: str, namespace: str | None = None) -> list[dict[str, Any]]:
        """List objects of a kind in one namespace, or cluster-wide when namespace is None."""
        info = self.kind_info(kind)
        if info.custom:
            if namespace is None:
                fn = self.custom_objects.list_cluster_custom_object
                kwargs: dict[str, Any] = {
                    "group": info.group,
                    "version": info.version,
                    "plural": info.plural,
                }
            else:
                fn = self.custom_objects.list_namespaced_custom_object
                kwargs = self._custom_kwargs(info, namespace)
        elif not info.namespaced:
            fn, kwargs = self._typed("list", info, kind), {}
        elif namespace is None:
            api = self._api(info.api_version)
            fn = getattr(api, f"list_{_snake_case(kind)}_for_all_namespaces")
            kwargs = {}
        else:
            fn, kwargs = self._typed("list", info, kind), {"namespace": namespace}
        result = await self._call("list", kind, None, namespace, fn, **kwargs)
        return result.get("items") or []

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Write the status subresource of a custom object (version-checked)."""
        kind = obj["kind"]
        info = self.kind_info(kind)
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace")
        return await self._call(
            "update status of", kind, name, namespace,
            self.custom_objects.replace_namespaced_custom_object_status,
            name=name, body=obj, **self._custom_kwargs(info, namespace),
        )

