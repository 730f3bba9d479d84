"""
Pydantic models for DexServer resources.

This module defines the DexServer specification, including the closed set of
connector variants (GitHub, Microsoft, LDAP), and the status sub-object owned
by the operator.
"""

from typing import Annotated, Any, Literal

import pydantic
from pydantic import BaseModel, Field, field_validator

from ..constants import GITHUB_SECRET_KEY, LDAP_SECRET_KEY, MICROSOFT_SECRET_KEY
from ..errors import ValidationError


class SecretRef(BaseModel):
    """Reference to a secret, optionally in another namespace."""

    model_config = {"populate_by_name": True}

    name: str = Field(..., min_length=1, description="Name of the secret")
    namespace: str | None = Field(
        None, description="Namespace of the secret (defaults to the DexServer's)"
    )

    def resolve_namespace(self, default: str) -> str:
        return self.namespace or default


class LocalObjectRef(BaseModel):
    """Reference to an object in the DexServer's namespace."""

    name: str = Field("", description="Name of the referenced object")


class GitHubOrg(BaseModel):
    name: str = Field(..., description="GitHub organization name")
    teams: list[str] = Field(default_factory=list, description="Teams to include")


class GitHubConfig(BaseModel):
    """GitHub OAuth2 connector settings."""

    model_config = {"populate_by_name": True}

    client_id: str = Field(..., alias="clientID", description="OAuth2 client ID")
    client_secret_ref: SecretRef = Field(
        ...,
        alias="clientSecretRef",
        description="Secret holding the OAuth2 client secret under 'clientSecret'",
    )
    redirect_uri: str = Field(
        ..., alias="redirectURI", description="Dex callback URL registered at GitHub"
    )
    org: str | None = Field(None, description="Single organization restriction")
    orgs: list[GitHubOrg] = Field(
        default_factory=list, description="Organizations (and teams) to accept"
    )


class MicrosoftConfig(BaseModel):
    """Microsoft OAuth2 connector settings."""

    model_config = {"populate_by_name": True}

    client_id: str = Field(..., alias="clientID", description="OAuth2 client ID")
    client_secret_ref: SecretRef = Field(
        ...,
        alias="clientSecretRef",
        description="Secret holding the OAuth2 client secret under 'clientSecret'",
    )
    redirect_uri: str = Field(
        ..., alias="redirectURI", description="Dex callback URL registered at Microsoft"
    )
    tenant: str | None = Field(None, description="Azure AD tenant restriction")


class LDAPUserSearch(BaseModel):
    model_config = {"populate_by_name": True}

    base_dn: str = Field("", alias="baseDN")
    filter: str = ""
    username: str = ""
    scope: str = ""
    id_attr: str = Field("", alias="idAttr")
    email_attr: str = Field("", alias="emailAttr")
    name_attr: str = Field("", alias="nameAttr")


class LDAPUserMatcher(BaseModel):
    model_config = {"populate_by_name": True}

    user_attr: str = Field(..., alias="userAttr")
    group_attr: str = Field(..., alias="groupAttr")


class LDAPGroupSearch(BaseModel):
    model_config = {"populate_by_name": True}

    base_dn: str = Field("", alias="baseDN")
    filter: str = ""
    scope: str = ""
    user_matchers: list[LDAPUserMatcher] = Field(
        default_factory=list, alias="userMatchers"
    )
    name_attr: str = Field("", alias="nameAttr")


class LDAPConfig(BaseModel):
    """LDAP connector settings."""

    model_config = {"populate_by_name": True}

    host: str = Field(..., description="LDAP server host:port")
    insecure_no_ssl: bool = Field(False, alias="insecureNoSSL")
    insecure_skip_verify: bool = Field(False, alias="insecureSkipVerify")
    start_tls: bool = Field(False, alias="startTLS")
    root_ca_ref: SecretRef | None = Field(
        None,
        alias="rootCARef",
        description="Secret with ca.crt and optionally tls.crt/tls.key for the LDAP server",
    )
    bind_dn: str = Field("", alias="bindDN")
    bind_pw_ref: SecretRef = Field(
        ..., alias="bindPWRef", description="Secret holding the bind password under 'bindPW'"
    )
    username_prompt: str = Field("", alias="usernamePrompt")
    user_search: LDAPUserSearch = Field(
        default_factory=LDAPUserSearch, alias="userSearch"
    )
    group_search: LDAPGroupSearch = Field(
        default_factory=LDAPGroupSearch, alias="groupSearch"
    )


class _ConnectorBase(BaseModel):
    model_config = {"populate_by_name": True}

    id: str = Field(..., min_length=1, description="Unique connector identifier")
    name: str = Field(..., description="Display name shown on the login page")


class GitHubConnector(_ConnectorBase):
    type: Literal["github"] = "github"
    github: GitHubConfig

    @property
    def credential_ref(self) -> SecretRef:
        return self.github.client_secret_ref

    @property
    def credential_key(self) -> str:
        return GITHUB_SECRET_KEY


class MicrosoftConnector(_ConnectorBase):
    type: Literal["microsoft"] = "microsoft"
    microsoft: MicrosoftConfig

    @property
    def credential_ref(self) -> SecretRef:
        return self.microsoft.client_secret_ref

    @property
    def credential_key(self) -> str:
        return MICROSOFT_SECRET_KEY


class LDAPConnector(_ConnectorBase):
    type: Literal["ldap"] = "ldap"
    ldap: LDAPConfig

    @property
    def credential_ref(self) -> SecretRef:
        return self.ldap.bind_pw_ref

    @property
    def credential_key(self) -> str:
        return LDAP_SECRET_KEY


Connector = Annotated[
    GitHubConnector | MicrosoftConnector | LDAPConnector,
    Field(discriminator="type"),
]


class DexServerSpec(BaseModel):
    """
    Desired state of a Dex server.

    Connector identifiers must be unique within one DexServer.
    """

    model_config = {"populate_by_name": True}

    issuer: str = Field(..., description="Public issuer URL of the Dex server")
    connectors: list[Connector] = Field(
        default_factory=list, description="Upstream identity provider connectors"
    )
    ingress_certificate_ref: LocalObjectRef = Field(
        default_factory=LocalObjectRef,
        alias="ingressCertificateRef",
        description="Secret holding the certificate served by the ingress",
    )

    @field_validator("connectors")
    @classmethod
    def validate_unique_ids(cls, v: list) -> list:
        seen: set[str] = set()
        for connector in v:
            if connector.id in seen:
                raise ValueError(f"duplicate connector id '{connector.id}'")
            seen.add(connector.id)
        return v


def parse_dexserver_spec(spec: dict[str, Any]) -> DexServerSpec:
    """Validate a raw DexServer spec, raising the operator's ValidationError."""
    try:
        return DexServerSpec.model_validate(spec)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise ValidationError(first["msg"], field=field) from e


class Condition(BaseModel):
    """Status condition following Kubernetes conventions."""

    model_config = {"populate_by_name": True}

    type: str = Field(..., description="Condition type")
    status: Literal["True", "False", "Unknown"] = Field(
        ..., description="Condition status"
    )
    reason: str = Field("", description="Machine-readable reason code")
    message: str = Field("", description="Human-readable message")
    last_transition_time: str | None = Field(
        None, alias="lastTransitionTime", description="RFC 3339 transition time"
    )


class RelatedObject(BaseModel):
    kind: str
    name: str
    namespace: str | None = None

