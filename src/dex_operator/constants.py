"""
Constants used throughout the Dex operator.

This module defines all constant values used by the operator including:
- The DexServer API coordinates
- Names of derived resources
- Resource labels and annotations
- Condition types and reason codes
"""

# DexServer custom resource
DEXSERVER_GROUP = "auth.identitatem.io"
DEXSERVER_VERSION = "v1alpha1"
DEXSERVER_PLURAL = "dexservers"
DEXSERVER_KIND = "DexServer"
DEXSERVER_API_VERSION = f"{DEXSERVER_GROUP}/{DEXSERVER_VERSION}"
DEXSERVER_CRD_NAME = f"{DEXSERVER_PLURAL}.{DEXSERVER_GROUP}"

# Derived resource names
SECRET_MTLS_NAME = "grpc-mtls"
SECRET_WEB_TLS_SUFFIX = "-tls-secret"
SERVICE_ACCOUNT_NAME = "dex-operator-dexsso"
CLUSTER_ROLE_NAME = SERVICE_ACCOUNT_NAME
GRPC_SERVICE_NAME = "grpc"
CONFIG_MAP_KEY = "config.yaml"

# Label constants for resource identification and management
OPERATOR_LABEL_KEY = "app.kubernetes.io/managed-by"
OPERATOR_LABEL_VALUE = "dex-operator"
IDP_CREDENTIAL_LABEL = "auth.identitatem.io/idp-credential"

# Annotation constants
MTLS_CERT_EXPIRY_ANNOTATION = "auth.identitatem.io/expiry"
CONFIG_HASH_ANNOTATION = "auth.identitatem.io/configHash"
MTLS_EXPIRY_POD_ANNOTATION = "auth.identitatem.io/grpcMtlsExpiry"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
SERVING_CERT_ANNOTATION = "service.beta.openshift.io/serving-cert-secret-name"

# Dex server ports and mount points
DEX_HTTPS_PORT = 5556
DEX_GRPC_PORT = 5557
DEX_CONFIG_DIR = "/etc/dex/cfg"
DEX_TLS_DIR = "/etc/dex/tls"
DEX_MTLS_DIR = "/etc/dex/mtls"
DEX_LDAP_CERTS_DIR = "/etc/dex/ldapcerts"

# Condition type and reason constants
CONDITION_APPLIED = "Applied"
REASON_APPLIED = "Applied"
MESSAGE_APPLIED = "DexServer is applied"
REASON_MTLS_SECRET_FAILED = "ConfigMTLSSecretFailed"
REASON_CONFIG_MAP_FAILED = "ConfigMapFailed"
REASON_HTTP_SERVICE_FAILED = "ConfigHTTPServiceFailed"
REASON_GRPC_SERVICE_FAILED = "ConfigGRPCServiceFailed"
REASON_SERVICE_ACCOUNT_FAILED = "ConfigServiceAccountFailed"
REASON_CLUSTER_ROLE_BINDING_FAILED = "ConfigClusterRoleBindingFailed"
REASON_DEPLOYMENT_FAILED = "ConfigDeploymentFailed"
REASON_INGRESS_FAILED = "ConfigIngressFailed"

# Connector credential keys
GITHUB_SECRET_KEY = "clientSecret"
MICROSOFT_SECRET_KEY = "clientSecret"
LDAP_SECRET_KEY = "bindPW"

# Kopf peering
PEERING_NAME = "dex-operator"
