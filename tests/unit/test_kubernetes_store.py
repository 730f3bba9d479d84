"""
Unit tests for ResourceStore.

The kubernetes client APIs are replaced with mocks; these tests cover method
dispatch per kind and the translation of ApiException into operator errors.
"""

from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from dex_operator.errors import ConflictError, KubernetesAPIError, NotFoundError
from dex_operator.utils.kubernetes import ResourceStore, set_owner_reference

from .helpers import make_dexserver


@pytest.fixture
def api_client():
    api_client = MagicMock()
    api_client.sanitize_for_serialization.side_effect = lambda obj: {"sanitized": obj}
    return api_client


@pytest.fixture
def core_api():
    return MagicMock()


@pytest.fixture
def custom_api():
    return MagicMock()


@pytest.fixture
def store(api_client, core_api, custom_api):
    store = ResourceStore(api_client, request_timeout=7)
    store._apis["v1"] = core_api
    store._apis["custom"] = custom_api
    store._apis["rbac.authorization.k8s.io/v1"] = MagicMock()
    return store


class TestDispatch:
    @pytest.mark.asyncio
    async def test_get_namespaced_typed(self, store, core_api):
        core_api.read_namespaced_config_map.return_value = {"kind": "ConfigMap"}

        result = await store.get("ConfigMap", "dex", "idp")

        assert result == {"kind": "ConfigMap"}
        core_api.read_namespaced_config_map.assert_called_once_with(
            name="dex", namespace="idp", _request_timeout=7
        )

    @pytest.mark.asyncio
    async def test_model_results_are_sanitized(self, store, core_api):
        model = object()
        core_api.read_namespaced_secret.return_value = model

        assert await store.get("Secret", "s", "idp") == {"sanitized": model}

    @pytest.mark.asyncio
    async def test_cluster_scoped_typed(self, store):
        rbac = store._apis["rbac.authorization.k8s.io/v1"]
        rbac.create_cluster_role_binding.return_value = {}
        body = {"kind": "ClusterRoleBinding", "metadata": {"name": "crb"}}

        await store.create(body)

        rbac.create_cluster_role_binding.assert_called_once_with(
            body=body, _request_timeout=7
        )

    @pytest.mark.asyncio
    async def test_update_replaces(self, store, core_api):
        core_api.replace_namespaced_service_account.return_value = {}
        body = {"kind": "ServiceAccount", "metadata": {"name": "sa", "namespace": "idp"}}

        await store.update(body)

        core_api.replace_namespaced_service_account.assert_called_once_with(
            name="sa", namespace="idp", body=body, _request_timeout=7
        )

    @pytest.mark.asyncio
    async def test_patch(self, store, core_api):
        core_api.patch_namespaced_secret.return_value = {}
        body = {"metadata": {"labels": {"x": ""}}}

        await store.patch("Secret", "s", "other", body)

        core_api.patch_namespaced_secret.assert_called_once_with(
            name="s", namespace="other", body=body, _request_timeout=7
        )

    @pytest.mark.asyncio
    async def test_dexserver_goes_through_custom_objects(self, store, custom_api):
        custom_api.get_namespaced_custom_object.return_value = {"kind": "DexServer"}

        await store.get("DexServer", "dex", "idp")

        custom_api.get_namespaced_custom_object.assert_called_once_with(
            name="dex",
            group="auth.identitatem.io",
            version="v1alpha1",
            plural="dexservers",
            namespace="idp",
            _request_timeout=7,
        )

    @pytest.mark.asyncio
    async def test_generic_ingress_create(self, store, custom_api):
        custom_api.create_namespaced_custom_object.return_value = {"kind": "Ingress"}
        body = {"kind": "Ingress", "metadata": {"name": "dex", "namespace": "idp"}}

        await store.create(body, generic=True)

        custom_api.create_namespaced_custom_object.assert_called_once_with(
            body=body,
            group="networking.k8s.io",
            version="v1",
            plural="ingresses",
            namespace="idp",
            _request_timeout=7,
        )

    @pytest.mark.asyncio
    async def test_list_dexservers_cluster_wide(self, store, custom_api):
        custom_api.list_cluster_custom_object.return_value = {
            "items": [{"metadata": {"name": "a"}}, {"metadata": {"name": "b"}}]
        }

        items = await store.list("DexServer")

        assert [i["metadata"]["name"] for i in items] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_update_status(self, store, custom_api):
        custom_api.replace_namespaced_custom_object_status.return_value = {}
        body = make_dexserver()

        await store.update_status(body)

        custom_api.replace_namespaced_custom_object_status.assert_called_once()
        kwargs = custom_api.replace_namespaced_custom_object_status.call_args.kwargs
        assert kwargs["name"] == "dex"
        assert kwargs["body"] is body

    @pytest.mark.asyncio
    async def test_unsupported_kind(self, store):
        with pytest.raises(ValueError):
            await store.get("Pod", "p", "idp")


class TestErrorTranslation:
    @pytest.mark.asyncio
    async def test_not_found(self, store, core_api):
        core_api.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(NotFoundError) as exc_info:
            await store.get("Secret", "missing", "idp")

        assert exc_info.value.message == "Secret idp/missing not found"

    @pytest.mark.asyncio
    async def test_get_optional_returns_none(self, store, core_api):
        core_api.read_namespaced_config_map.side_effect = ApiException(status=404)
        assert await store.get_optional("ConfigMap", "dex", "idp") is None

    @pytest.mark.asyncio
    async def test_get_optional_propagates_other_errors(self, store, core_api):
        core_api.read_namespaced_config_map.side_effect = ApiException(status=500)
        with pytest.raises(KubernetesAPIError):
            await store.get_optional("ConfigMap", "dex", "idp")

    @pytest.mark.asyncio
    async def test_conflict(self, store, core_api):
        core_api.replace_namespaced_secret.side_effect = ApiException(
            status=409, reason="Conflict"
        )
        body = {"kind": "Secret", "metadata": {"name": "s", "namespace": "idp"}}

        with pytest.raises(ConflictError):
            await store.update(body)

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, store, core_api):
        core_api.read_namespaced_service.side_effect = ApiException(status=503)

        with pytest.raises(KubernetesAPIError) as exc_info:
            await store.get("Service", "dex", "idp")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_forbidden_is_not_retryable(self, store, core_api):
        core_api.read_namespaced_service.side_effect = ApiException(
            status=403, reason="Forbidden"
        )

        with pytest.raises(KubernetesAPIError) as exc_info:
            await store.get("Service", "dex", "idp")

        assert exc_info.value.retryable is False
        assert isinstance(exc_info.value.cause, ApiException)


class TestOwnerReference:
    def test_sets_controller_reference(self):
        owner = make_dexserver()
        owner["metadata"]["uid"] = "u-1"
        manifest = {"metadata": {"name": "x"}}

        set_owner_reference(manifest, owner)
        set_owner_reference(manifest, owner)

        assert manifest["metadata"]["ownerReferences"] == [
            {
                "apiVersion": "auth.identitatem.io/v1alpha1",
                "kind": "DexServer",
                "name": "dex",
                "uid": "u-1",
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
