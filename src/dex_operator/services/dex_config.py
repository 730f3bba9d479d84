"""
Rendering of the Dex server configuration file.

Connector credentials are read from their referenced secrets and inlined into
config.yaml. Every secret read this way is labelled as an idp credential so
the credential-secret watch picks up later edits to it.
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any

import yaml

from ..constants import (
    DEX_GRPC_PORT,
    DEX_HTTPS_PORT,
    DEX_LDAP_CERTS_DIR,
    DEX_MTLS_DIR,
    DEX_TLS_DIR,
    IDP_CREDENTIAL_LABEL,
)
from ..errors import NotFoundError, OperatorError, ValidationError
from ..models import (
    Connector,
    DexServerSpec,
    GitHubConnector,
    LDAPConnector,
    MicrosoftConnector,
    SecretRef,
)
from ..utils.kubernetes import ResourceStore

logger = logging.getLogger(__name__)


@dataclass
class LDAPCertPaths:
    root_ca: str = ""
    client_cert: str = ""
    client_key: str = ""


@dataclass
class CertVolumes:
    volumes: list[dict[str, Any]] = field(default_factory=list)
    volume_mounts: list[dict[str, Any]] = field(default_factory=list)


def ldap_certs_dir(connector_id: str) -> str:
    return f"{DEX_LDAP_CERTS_DIR}/{connector_id}"


def ldap_cert_volumes(spec: DexServerSpec) -> CertVolumes:
    """Secret volumes for LDAP connectors that reference a root CA secret."""
    result = CertVolumes()
    for connector in spec.connectors:
        if not isinstance(connector, LDAPConnector):
            continue
        ref = connector.ldap.root_ca_ref
        if ref is None or not ref.name:
            continue
        volume_name = f"ldapcerts-{connector.id}"
        result.volumes.append({"name": volume_name, "secret": {"secretName": ref.name}})
        result.volume_mounts.append(
            {"name": volume_name, "mountPath": ldap_certs_dir(connector.id)}
        )
    return result


def _prune(value: Any) -> Any:
    """Drop empty fields recursively."""
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v not in (None, "", [], {}, False)}
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


def build_config(issuer: str, connectors: list[dict[str, Any]]) -> dict[str, Any]:
    config: dict[str, Any] = {
        "issuer": issuer,
        "storage": {"type": "kubernetes", "config": {"inCluster": True}},
        "web": {
            "https": f"0.0.0.0:{DEX_HTTPS_PORT}",
            "tlsCert": f"{DEX_TLS_DIR}/tls.crt",
            "tlsKey": f"{DEX_TLS_DIR}/tls.key",
        },
        "grpc": {
            "addr": f"0.0.0.0:{DEX_GRPC_PORT}",
            "tlsCert": f"{DEX_MTLS_DIR}/tls.crt",
            "tlsKey": f"{DEX_MTLS_DIR}/tls.key",
            "tlsClientCA": f"{DEX_MTLS_DIR}/ca.crt",
        },
        "oauth2": {"skipApprovalScreen": True},
    }
    if connectors:
        config["connectors"] = connectors
    return config


def dump_config(config: dict[str, Any]) -> str:
    return yaml.safe_dump(config, sort_keys=False, default_flow_style=False)


class DexConfigRenderer:
    """Builds config.yaml for one DexServer from its connector specs."""

    def __init__(self, store: ResourceStore):
        self.store = store

    async def _credential_secret(self, ref: SecretRef, namespace: str) -> dict[str, Any]:
        secret_namespace = ref.resolve_namespace(namespace)
        secret = await self.store.get("Secret", ref.name, secret_namespace)
        await self.ensure_credential_label(secret)
        return secret

    async def ensure_credential_label(self, secret: dict[str, Any]) -> None:
        """Label a referenced secret as an idp credential unless it already is."""
        meta = secret.get("metadata") or {}
        if IDP_CREDENTIAL_LABEL in (meta.get("labels") or {}):
            return
        try:
            await self.store.patch(
                "Secret",
                meta["name"],
                meta.get("namespace"),
                {"metadata": {"labels": {IDP_CREDENTIAL_LABEL: ""}}},
            )
        except OperatorError as e:
            logger.error(
                f"Error updating secret {meta.get('namespace')}/{meta['name']} "
                f"with label: {e.message}"
            )
            return
        meta.setdefault("labels", {})[IDP_CREDENTIAL_LABEL] = ""

    async def resolve_credential(self, connector: Connector, namespace: str) -> str:
        """
        Read the connector's credential from its secret.

        Raises:
            NotFoundError: If the secret or its credential key is missing
        """
        ref = connector.credential_ref
        secret = await self._credential_secret(ref, namespace)
        key = connector.credential_key
        encoded = (secret.get("data") or {}).get(key)
        if encoded is None:
            raise NotFoundError(
                f"Key '{key}' of Secret", ref.name, ref.resolve_namespace(namespace)
            )
        return base64.b64decode(encoded).decode()

    async def ldap_cert_paths(
        self, connector: LDAPConnector, namespace: str
    ) -> LDAPCertPaths:
        ref = connector.ldap.root_ca_ref
        paths = LDAPCertPaths()
        if ref is None or not ref.name:
            return paths
        if ref.resolve_namespace(namespace) != namespace:
            # Pods can only mount secrets from their own namespace
            raise ValidationError(
                f"rootCARef of connector '{connector.id}' must be in namespace "
                f"'{namespace}', got '{ref.namespace}'",
                field="connectors",
                user_action="Copy the CA secret into the DexServer namespace",
            )
        secret = await self._credential_secret(ref, namespace)
        data = secret.get("data") or {}
        base = ldap_certs_dir(connector.id)
        if data.get("ca.crt"):
            paths.root_ca = f"{base}/ca.crt"
        if data.get("tls.crt"):
            paths.client_cert = f"{base}/tls.crt"
        if data.get("tls.key"):
            paths.client_key = f"{base}/tls.key"
        return paths

    async def connector_config(
        self, connector: Connector, namespace: str
    ) -> dict[str, Any]:
        """Dex connector entry for one connector, credentials inlined."""
        credential = await self.resolve_credential(connector, namespace)

        if isinstance(connector, GitHubConnector):
            github = connector.github
            config = {
                "clientID": github.client_id,
                "clientSecret": credential,
                "redirectURI": github.redirect_uri,
                "org": github.org,
                "orgs": [org.model_dump() for org in github.orgs],
            }
        elif isinstance(connector, MicrosoftConnector):
            microsoft = connector.microsoft
            config = {
                "clientID": microsoft.client_id,
                "clientSecret": credential,
                "redirectURI": microsoft.redirect_uri,
                "tenant": microsoft.tenant,
            }
        elif isinstance(connector, LDAPConnector):
            ldap = connector.ldap
            paths = await self.ldap_cert_paths(connector, namespace)
            config = {
                "host": ldap.host,
                "insecureNoSSL": ldap.insecure_no_ssl,
                "insecureSkipVerify": ldap.insecure_skip_verify,
                "startTLS": ldap.start_tls,
                "rootCA": paths.root_ca,
                "clientCA": paths.client_cert,
                "clientKey": paths.client_key,
                "bindDN": ldap.bind_dn,
                "bindPW": credential,
                "usernamePrompt": ldap.username_prompt,
            }
            if ldap.user_search.base_dn:
                config["userSearch"] = ldap.user_search.model_dump(by_alias=True)
            if ldap.group_search.base_dn:
                config["groupSearch"] = ldap.group_search.model_dump(by_alias=True)
        else:
            raise ValidationError(
                f"unsupported connector type '{getattr(connector, 'type', None)}'",
                field="connectors",
            )

        return _prune(
            {
                "type": connector.type,
                "id": connector.id,
                "name": connector.name,
                "config": config,
            }
        )

    async def render(self, spec: DexServerSpec, namespace: str) -> str:
        """
        Render config.yaml for a DexServer.

        Args:
            spec: Validated DexServer spec
            namespace: Namespace of the DexServer, the default for secret refs

        Returns:
            The YAML document
        """
        connectors = [
            await self.connector_config(connector, namespace)
            for connector in spec.connectors
        ]
        return dump_config(build_config(spec.issuer, connectors))
