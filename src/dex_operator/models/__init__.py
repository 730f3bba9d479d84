"""
Models package - Pydantic models for type-safe resource handling.

Defines data models for the DexServer specification, its connector
variants, and the status written back by the operator.
"""

from .dexserver import (
    Condition,
    Connector,
    DexServerSpec,
    GitHubConnector,
    LDAPConnector,
    MicrosoftConnector,
    RelatedObject,
    SecretRef,
    parse_dexserver_spec,
)

__all__ = [
    "Condition",
    "Connector",
    "DexServerSpec",
    "GitHubConnector",
    "LDAPConnector",
    "MicrosoftConnector",
    "RelatedObject",
    "SecretRef",
    "parse_dexserver_spec",
]
