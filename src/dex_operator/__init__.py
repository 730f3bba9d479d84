"""
Dex Operator - A Kubernetes operator for Dex identity-provider servers.

This operator converges each DexServer resource into a running Dex instance:
- Mutual-TLS credentials for the gRPC API, renewed before expiry
- Connector configuration rendered from GitHub, Microsoft and LDAP specs
- Services, service account, cluster role binding, deployment and ingress
- Status conditions summarising the outcome of every convergence pass
"""

__version__ = "0.1.0"
