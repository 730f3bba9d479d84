"""In-memory fakes and object factories for the unit tests."""

import base64
import copy
import itertools
from typing import Any

from dex_operator.constants import DEXSERVER_API_VERSION, DEXSERVER_KIND
from dex_operator.errors import ConflictError, NotFoundError
from dex_operator.utils.applier import merge
from dex_operator.utils.kubernetes import KINDS


class FakeResourceStore:
    """
    In-memory stand-in for ResourceStore.

    Objects are keyed by (kind, namespace, name); cluster-scoped kinds use a
    None namespace. Every mutating call is recorded in ``writes`` so tests can
    assert on exactly what a pass wrote. Stale resourceVersions are rejected
    with ConflictError like the API server does. Kinds reached through the
    custom-objects endpoint are collected in ``generic_kinds``.
    """

    def __init__(self):
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.writes: list[tuple[str, str, str | None, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.generic_kinds: set[str] = set()
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    @staticmethod
    def _key(kind: str, name: str, namespace: str | None) -> tuple[str, str | None, str]:
        if not KINDS[kind].namespaced:
            namespace = None
        return kind, namespace, name

    def _stamp(self, obj: dict[str, Any]) -> None:
        meta = obj.setdefault("metadata", {})
        meta["resourceVersion"] = str(next(self._versions))
        meta.setdefault("uid", f"uid-{next(self._uids)}")

    def _maybe_fail(self, verb: str, kind: str) -> None:
        error = self.failures.get((verb, kind))
        if error is not None:
            raise error

    def fail_on(self, verb: str, kind: str, error: Exception) -> None:
        self.failures[(verb, kind)] = error

    def add(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Seed an object without recording a write."""
        obj = copy.deepcopy(obj)
        self._stamp(obj)
        meta = obj["metadata"]
        self.objects[self._key(obj["kind"], meta["name"], meta.get("namespace"))] = obj
        return copy.deepcopy(obj)

    def peek(self, kind: str, name: str, namespace: str | None = None) -> dict[str, Any] | None:
        obj = self.objects.get(self._key(kind, name, namespace))
        return copy.deepcopy(obj) if obj is not None else None

    def writes_of(self, kind: str) -> list[tuple[str, str, str | None, str]]:
        return [w for w in self.writes if w[1] == kind]

    async def get(self, kind, name, namespace=None, generic=False):
        self._maybe_fail("get", kind)
        if generic:
            self.generic_kinds.add(kind)
        obj = self.objects.get(self._key(kind, name, namespace))
        if obj is None:
            raise NotFoundError(kind, name, namespace)
        return copy.deepcopy(obj)

    async def get_optional(self, kind, name, namespace=None, generic=False):
        try:
            return await self.get(kind, name, namespace, generic=generic)
        except NotFoundError:
            return None

    async def create(self, obj, generic=False):
        kind = obj["kind"]
        self._maybe_fail("create", kind)
        if generic:
            self.generic_kinds.add(kind)
        meta = obj["metadata"]
        key = self._key(kind, meta["name"], meta.get("namespace"))
        if key in self.objects:
            raise ConflictError(f"{kind} {meta['name']} already exists")
        stored = copy.deepcopy(obj)
        self._stamp(stored)
        self.objects[key] = stored
        self.writes.append(("create", kind, meta.get("namespace"), meta["name"]))
        return copy.deepcopy(stored)

    def _check_version(self, obj: dict[str, Any]) -> tuple[tuple, dict[str, Any]]:
        meta = obj["metadata"]
        key = self._key(obj["kind"], meta["name"], meta.get("namespace"))
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(obj["kind"], meta["name"], meta.get("namespace"))
        expected = meta.get("resourceVersion")
        if expected is not None and expected != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{obj['kind']} {meta['name']} has been modified")
        return key, current

    async def update(self, obj, generic=False):
        kind = obj["kind"]
        self._maybe_fail("update", kind)
        if generic:
            self.generic_kinds.add(kind)
        key, current = self._check_version(obj)
        stored = copy.deepcopy(obj)
        if "status" in current:
            stored["status"] = copy.deepcopy(current["status"])
        self._stamp(stored)
        self.objects[key] = stored
        meta = obj["metadata"]
        self.writes.append(("update", kind, meta.get("namespace"), meta["name"]))
        return copy.deepcopy(stored)

    async def patch(self, kind, name, namespace, body):
        self._maybe_fail("patch", kind)
        key = self._key(kind, name, namespace)
        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(kind, name, namespace)
        stored = merge(current, body)
        self._stamp(stored)
        self.objects[key] = stored
        self.writes.append(("patch", kind, namespace, name))
        return copy.deepcopy(stored)

    async def list(self, kind, namespace=None):
        self._maybe_fail("list", kind)
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self.objects.items(), key=lambda i: str(i[0]))
            if k == kind and (namespace is None or ns == namespace)
        ]

    async def update_status(self, obj):
        kind = obj["kind"]
        self._maybe_fail("update_status", kind)
        key, current = self._check_version(obj)
        stored = copy.deepcopy(current)
        stored["status"] = copy.deepcopy(obj.get("status"))
        self._stamp(stored)
        self.objects[key] = stored
        meta = obj["metadata"]
        self.writes.append(("update_status", kind, meta.get("namespace"), meta["name"]))
        return copy.deepcopy(stored)


def make_secret(
    name: str, namespace: str, data: dict[str, str], labels: dict[str, str] | None = None
) -> dict[str, Any]:
    """Secret manifest with plain-text values base64-encoded."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "data": {k: base64.b64encode(v.encode()).decode() for k, v in data.items()},
    }


def make_dexserver(
    name: str = "dex",
    namespace: str = "idp",
    spec: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "apiVersion": DEXSERVER_API_VERSION,
        "kind": DEXSERVER_KIND,
        "metadata": {"name": name, "namespace": namespace, "generation": 1},
        "spec": spec
        if spec is not None
        else {
            "issuer": "https://dex.apps.example.com",
            "connectors": [
                {
                    "type": "github",
                    "id": "github",
                    "name": "GitHub",
                    "github": {
                        "clientID": "client-id",
                        "clientSecretRef": {"name": "github-secret"},
                        "redirectURI": "https://dex.apps.example.com/callback",
                    },
                }
            ],
        },
    }
