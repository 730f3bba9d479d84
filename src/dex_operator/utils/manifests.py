"""
Named manifest templates for the resources derived from a DexServer.

Each template is a builder registered under a stable name that turns a values
mapping into a manifest dict. The applier renders templates by name, so the
reconciler only decides *which* templates to apply and with *what* values.
"""

from collections.abc import Callable
from typing import Any

from ..constants import (
    CLUSTER_ROLE_NAME,
    CONFIG_HASH_ANNOTATION,
    CONFIG_MAP_KEY,
    DEX_CONFIG_DIR,
    DEX_GRPC_PORT,
    DEX_HTTPS_PORT,
    DEX_MTLS_DIR,
    DEX_TLS_DIR,
    MTLS_EXPIRY_POD_ANNOTATION,
    OPERATOR_LABEL_KEY,
    OPERATOR_LABEL_VALUE,
    SERVING_CERT_ANNOTATION,
)

Template = Callable[[dict[str, Any]], dict[str, Any]]

TEMPLATES: dict[str, Template] = {}


def template(name: str) -> Callable[[Template], Template]:
    """Register a manifest builder under a template name."""

    def decorator(func: Template) -> Template:
        TEMPLATES[name] = func
        return func

    return decorator


def render(name: str, values: dict[str, Any]) -> dict[str, Any]:
    try:
        builder = TEMPLATES[name]
    except KeyError:
        raise ValueError(f"Unknown manifest template: {name}") from None
    return builder(values)


def _labels(values: dict[str, Any]) -> dict[str, str]:
    return {"app": values["name"], OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE}


def _metadata(name: str, values: dict[str, Any], **extra: Any) -> dict[str, Any]:
    metadata = {"name": name, "namespace": values["namespace"], "labels": _labels(values)}
    metadata.update(extra)
    return metadata


@template("dex-server/config_map.yaml")
def config_map(values: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(values["name"], values),
        "data": {CONFIG_MAP_KEY: values["config_yaml"]},
    }


@template("dex-server/service_http.yaml")
def service_http(values: dict[str, Any]) -> dict[str, Any]:
    # The serving-cert annotation has OpenShift issue the web TLS secret.
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(
            values["name"],
            values,
            annotations={SERVING_CERT_ANNOTATION: values["serving_cert_secret_name"]},
        ),
        "spec": {
            "type": "ClusterIP",
            "selector": {"app": values["name"]},
            "ports": [
                {
                    "name": "https",
                    "port": DEX_HTTPS_PORT,
                    "protocol": "TCP",
                    "targetPort": "https",
                }
            ],
        },
    }


@template("dex-server/service_grpc.yaml")
def service_grpc(values: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(values["grpc_service_name"], values),
        "spec": {
            "type": "ClusterIP",
            "selector": {"app": values["name"]},
            "ports": [
                {
                    "name": "grpc",
                    "port": DEX_GRPC_PORT,
                    "protocol": "TCP",
                    "targetPort": "grpc",
                }
            ],
        },
    }


@template("dex-server/service_account.yaml")
def service_account(values: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(values["service_account_name"], values),
    }


@template("dex-server/cluster_role.yaml")
def cluster_role(values: dict[str, Any]) -> dict[str, Any]:
    # Dex keeps its state in its own CRDs (kubernetes storage backend).
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": {
            "name": values.get("cluster_role_name", CLUSTER_ROLE_NAME),
            "labels": {OPERATOR_LABEL_KEY: OPERATOR_LABEL_VALUE},
        },
        "rules": [
            {"apiGroups": ["dex.coreos.com"], "resources": ["*"], "verbs": ["*"]},
            {
                "apiGroups": ["apiextensions.k8s.io"],
                "resources": ["customresourcedefinitions"],
                "verbs": ["create", "get", "list"],
            },
        ],
    }


@template("dex-server/cluster_role_binding.yaml")
def cluster_role_binding(values: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {
            "name": values["cluster_role_binding_name"],
            "labels": _labels(values),
        },
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": values["cluster_role_name"],
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": values["service_account_name"],
                "namespace": values["namespace"],
            }
        ],
    }


def _anti_affinity_term(name: str, topology_key: str, weight: int) -> dict[str, Any]:
    return {
        "weight": weight,
        "podAffinityTerm": {
            "labelSelector": {
                "matchExpressions": [
                    {
                        "key": "idp-antiaffinity-selector",
                        "operator": "In",
                        "values": [name],
                    }
                ]
            },
            "topologyKey": topology_key,
        },
    }


@template("dex-server/deployment.yaml")
def deployment(values: dict[str, Any]) -> dict[str, Any]:
    name = values["name"]
    namespace = values["namespace"]
    selector = {
        "app": name,
        "dexconfig_name": name,
        "dexconfig_namespace": namespace,
    }

    # Omitted rather than blank so their later appearance changes the template.
    annotations = {}
    if values.get("config_hash"):
        annotations[CONFIG_HASH_ANNOTATION] = values["config_hash"]
    if values.get("mtls_secret_expiry"):
        annotations[MTLS_EXPIRY_POD_ANNOTATION] = values["mtls_secret_expiry"]

    pod_metadata: dict[str, Any] = {
        "labels": {**selector, "idp-antiaffinity-selector": name}
    }
    if annotations:
        pod_metadata["annotations"] = annotations

    volume_mounts = [
        {"name": "config", "mountPath": DEX_CONFIG_DIR},
        {"name": "tls", "mountPath": DEX_TLS_DIR},
        {"name": "mtls", "mountPath": DEX_MTLS_DIR},
        *values.get("additional_volume_mounts", []),
    ]
    volumes = [
        {
            "name": "config",
            "configMap": {
                "name": name,
                "items": [{"key": CONFIG_MAP_KEY, "path": CONFIG_MAP_KEY}],
            },
        },
        {"name": "tls", "secret": {"secretName": values["tls_secret_name"]}},
        {"name": "mtls", "secret": {"secretName": values["mtls_secret_name"]}},
        *values.get("additional_volumes", []),
    ]

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(name, values),
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": pod_metadata,
                "spec": {
                    "affinity": {
                        "podAntiAffinity": {
                            "preferredDuringSchedulingIgnoredDuringExecution": [
                                _anti_affinity_term(name, "topology.kubernetes.io/zone", 70),
                                _anti_affinity_term(name, "kubernetes.io/hostname", 35),
                            ]
                        }
                    },
                    "containers": [
                        {
                            "name": name,
                            "image": values["dex_image"],
                            "imagePullPolicy": "Always",
                            "command": [
                                "/usr/local/bin/dex",
                                "serve",
                                f"{DEX_CONFIG_DIR}/{CONFIG_MAP_KEY}",
                            ],
                            "env": [
                                {"name": "KUBERNETES_POD_NAMESPACE", "value": namespace}
                            ],
                            "ports": [
                                {"name": "https", "containerPort": DEX_HTTPS_PORT, "protocol": "TCP"},
                                {"name": "grpc", "containerPort": DEX_GRPC_PORT, "protocol": "TCP"},
                            ],
                            "volumeMounts": volume_mounts,
                        }
                    ],
                    "serviceAccountName": values["service_account_name"],
                    "tolerations": [
                        {
                            "key": "node-role.kubernetes.io/infra",
                            "operator": "Exists",
                            "effect": "NoSchedule",
                        },
                        {"key": "dedicated", "operator": "Exists", "effect": "NoSchedule"},
                    ],
                    "volumes": volumes,
                },
            },
        },
    }


@template("dex-server/ingress.yaml")
def ingress(values: dict[str, Any]) -> dict[str, Any]:
    name = values["name"]
    host = values["host"]
    spec: dict[str, Any] = {
        "rules": [
            {
                "host": host,
                "http": {
                    "paths": [
                        {
                            "path": "/",
                            "pathType": "Prefix",
                            "backend": {
                                "service": {"name": name, "port": {"name": "https"}}
                            },
                        }
                    ]
                },
            }
        ]
    }
    if values.get("ingress_certificate_name"):
        spec["tls"] = [
            {"hosts": [host], "secretName": values["ingress_certificate_name"]}
        ]

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": _metadata(
            name,
            values,
            annotations={
                "route.openshift.io/termination": "reencrypt",
                "nginx.ingress.kubernetes.io/backend-protocol": "HTTPS",
            },
        ),
        "spec": spec,
    }
