"""
Convergence engine for DexServer resources.

One pass runs a fixed, ordered table of sync steps. Each step is gated on the
previous one; the first failure is recorded as an Applied=False condition with
the step's reason and ends the pass. A pass that completes records
Applied=True and asks to be re-run after the requeue interval so the mTLS
bundle is re-checked even when nothing else changes.
"""

import asyncio
import copy
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from ..constants import (
    CLUSTER_ROLE_NAME,
    GRPC_SERVICE_NAME,
    MTLS_CERT_EXPIRY_ANNOTATION,
    REASON_CLUSTER_ROLE_BINDING_FAILED,
    REASON_CONFIG_MAP_FAILED,
    REASON_DEPLOYMENT_FAILED,
    REASON_GRPC_SERVICE_FAILED,
    REASON_HTTP_SERVICE_FAILED,
    REASON_INGRESS_FAILED,
    REASON_MTLS_SECRET_FAILED,
    REASON_SERVICE_ACCOUNT_FAILED,
    SECRET_MTLS_NAME,
    SECRET_WEB_TLS_SUFFIX,
    SERVICE_ACCOUNT_NAME,
)
from ..errors import ConfigurationError, OperatorError, ReconciliationError
from ..models import DexServerSpec, RelatedObject, parse_dexserver_spec
from ..observability.logging import OperatorLogger
from ..observability.tracing import get_tracer
from ..utils.applier import ManifestApplier
from ..utils.kubernetes import ResourceStore
from .certificate_manager import CertificateManager
from .config_hash import fingerprint
from .dex_config import DexConfigRenderer, ldap_cert_volumes
from .status_conditions import applied_condition, failed_condition, merge_conditions
from .work_queue import QueueShutDown, ReconcileQueue, split_key

RESOURCE_TYPE = "dexserver"


@dataclass
class ReconcileResult:
    """Outcome of a completed pass; ``requeue_after`` is None for no requeue."""

    requeue_after: float | None = None


@dataclass
class PassContext:
    """State threaded through the steps of one pass."""

    dexserver: dict[str, Any]
    applier: ManifestApplier
    spec: DexServerSpec | None = None
    related_objects: list[dict[str, Any]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.dexserver["metadata"]["name"]

    @property
    def namespace(self) -> str:
        return self.dexserver["metadata"]["namespace"]

    def values(self, **extra: Any) -> dict[str, Any]:
        return {"name": self.name, "namespace": self.namespace, **extra}

    def relate(self, kind: str, name: str, namespace: str | None = None) -> None:
        self.related_objects.append(
            RelatedObject(kind=kind, name=name, namespace=namespace).model_dump(
                exclude_none=True
            )
        )


@dataclass(frozen=True)
class SyncStep:
    """One row of the step table: what it does, how, and its failure reason."""

    description: str
    action: Callable[[PassContext], Awaitable[None]]
    reason: str


def error_message(error: BaseException) -> str:
    if isinstance(error, OperatorError):
        return error.message
    if isinstance(error, TimeoutError):
        return "reconciliation deadline exceeded"
    return str(error) or type(error).__name__


def issuer_host(issuer: str) -> str:
    """Host part of the issuer URL, used as the ingress host."""
    host = urlparse(issuer).hostname
    if not host:
        raise ConfigurationError(
            f"issuer '{issuer}' has no host",
            user_action="Set spec.issuer to an absolute URL such as https://dex.example.com",
        )
    return host


class DexServerReconciler:
    """
    Drives a DexServer's derived resources toward its spec.

    Args:
        store: Cluster resource store
        certificate_manager: Keeps the gRPC mTLS bundle fresh
        dex_image: Container image for the Dex server
        requeue_after: Delay before a converged DexServer is checked again
        pass_timeout: Deadline for one pass, in seconds
        metrics: Optional MetricsCollector
    """

    def __init__(
        self,
        store: ResourceStore,
        certificate_manager: CertificateManager,
        dex_image: str,
        requeue_after: float = 3600.0,
        pass_timeout: float | None = 120.0,
        metrics: Any = None,
    ):
        self.store = store
        self.certificate_manager = certificate_manager
        self.config_renderer = DexConfigRenderer(store)
        self.dex_image = dex_image
        self.requeue_after = requeue_after
        self.pass_timeout = pass_timeout
        self.metrics = metrics
        self.logger = OperatorLogger(self.__class__.__name__)
        self.tracer = get_tracer(__name__)
        self.steps = (
            SyncStep("configure MTLS secret", self.ensure_mtls_secret, REASON_MTLS_SECRET_FAILED),
            SyncStep("sync ConfigMap", self.sync_config_map, REASON_CONFIG_MAP_FAILED),
            SyncStep("sync http service", self.sync_http_service, REASON_HTTP_SERVICE_FAILED),
            SyncStep("sync grpc service", self.sync_grpc_service, REASON_GRPC_SERVICE_FAILED),
            SyncStep("sync ServiceAccount", self.sync_service_account, REASON_SERVICE_ACCOUNT_FAILED),
            SyncStep("sync ClusterRoleBinding", self.sync_cluster_role_binding, REASON_CLUSTER_ROLE_BINDING_FAILED),
            SyncStep("sync Deployment", self.sync_deployment, REASON_DEPLOYMENT_FAILED),
            SyncStep("sync Ingress", self.sync_ingress, REASON_INGRESS_FAILED),
        )

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one convergence pass for a DexServer.

        Returns:
            ReconcileResult; no requeue when the DexServer no longer exists

        Raises:
            ReconciliationError: If a step failed (its condition is already recorded)
        """
        start_time = time.time()
        self.logger.log_reconciliation_start(
            resource_type=RESOURCE_TYPE, resource_name=name, namespace=namespace
        )

        with self.tracer.start_as_current_span(
            "dexserver.reconcile",
            attributes={"dexserver.namespace": namespace, "dexserver.name": name},
        ):
            if self.metrics is not None:
                async with self.metrics.track_reconciliation(namespace, name):
                    result = await self._run_pass(namespace, name, start_time)
            else:
                result = await self._run_pass(namespace, name, start_time)

        return result

    async def _run_pass(
        self, namespace: str, name: str, start_time: float
    ) -> ReconcileResult:
        dexserver = await self.store.get_optional("DexServer", name, namespace)
        if dexserver is None:
            self.logger.info(
                f"DexServer {namespace}/{name} not found, ignoring",
                resource_type=RESOURCE_TYPE,
                resource_name=name,
                namespace=namespace,
            )
            return ReconcileResult()

        ctx = PassContext(
            dexserver=dexserver, applier=ManifestApplier(self.store, owner=dexserver)
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.pass_timeout if self.pass_timeout else None

        for step in self.steps:
            try:
                with self.tracer.start_as_current_span(f"dexserver.{step.description}"):
                    async with asyncio.timeout_at(deadline):
                        await step.action(ctx)
            except Exception as e:
                self.logger.log_step_failure(
                    resource_type=RESOURCE_TYPE,
                    resource_name=name,
                    namespace=namespace,
                    step=step.description,
                    reason=step.reason,
                    error=e,
                    duration=time.time() - start_time,
                )
                message = f"failed to {step.description}. error: {error_message(e)}"
                await self.write_status(dexserver, [failed_condition(step.reason, message)])
                raise ReconciliationError(
                    message,
                    step=step.description,
                    reason=step.reason,
                    retryable=not isinstance(e, OperatorError) or e.retryable,
                    cause=e,
                ) from e

        await self.write_status(dexserver, [applied_condition()], ctx.related_objects)
        self.logger.log_reconciliation_success(
            resource_type=RESOURCE_TYPE,
            resource_name=name,
            namespace=namespace,
            duration=time.time() - start_time,
        )
        return ReconcileResult(requeue_after=self.requeue_after)

    async def write_status(
        self,
        dexserver: dict[str, Any],
        conditions: list[dict[str, Any]],
        related_objects: list[dict[str, Any]] | None = None,
    ) -> bool:
        """
        Merge conditions into the DexServer status and persist it if it changed.

        Returns:
            True if a status write was made
        """
        status = dexserver.get("status") or {}
        new_status = {
            **status,
            "conditions": merge_conditions(status.get("conditions"), conditions),
        }
        if related_objects is not None:
            new_status["relatedObjects"] = related_objects
        if new_status == status:
            return False

        body = copy.deepcopy(dexserver)
        body["status"] = new_status
        updated = await self.store.update_status(body)
        dexserver["status"] = new_status
        if updated and "metadata" in updated:
            dexserver["metadata"]["resourceVersion"] = updated["metadata"].get(
                "resourceVersion"
            )
        return True

    # Steps

    async def ensure_mtls_secret(self, ctx: PassContext) -> None:
        await self.certificate_manager.ensure(ctx.namespace, owner=ctx.dexserver)
        ctx.relate("Secret", SECRET_MTLS_NAME, ctx.namespace)

    async def sync_config_map(self, ctx: PassContext) -> None:
        ctx.spec = parse_dexserver_spec(ctx.dexserver.get("spec") or {})
        config_yaml = await self.config_renderer.render(ctx.spec, ctx.namespace)
        await ctx.applier.apply_direct(
            ["dex-server/config_map.yaml"], ctx.values(config_yaml=config_yaml)
        )
        ctx.relate("ConfigMap", ctx.name, ctx.namespace)

    async def sync_http_service(self, ctx: PassContext) -> None:
        await ctx.applier.apply_direct(
            ["dex-server/service_http.yaml"],
            ctx.values(serving_cert_secret_name=ctx.name + SECRET_WEB_TLS_SUFFIX),
        )
        ctx.relate("Service", ctx.name, ctx.namespace)

    async def sync_grpc_service(self, ctx: PassContext) -> None:
        await ctx.applier.apply_direct(
            ["dex-server/service_grpc.yaml"],
            ctx.values(grpc_service_name=GRPC_SERVICE_NAME),
        )
        ctx.relate("Service", GRPC_SERVICE_NAME, ctx.namespace)

    async def sync_service_account(self, ctx: PassContext) -> None:
        await ctx.applier.apply_direct(
            ["dex-server/service_account.yaml"],
            ctx.values(service_account_name=SERVICE_ACCOUNT_NAME),
        )
        ctx.relate("ServiceAccount", SERVICE_ACCOUNT_NAME, ctx.namespace)

    async def sync_cluster_role_binding(self, ctx: PassContext) -> None:
        binding_name = f"{SERVICE_ACCOUNT_NAME}-{ctx.namespace}"
        await ctx.applier.apply_direct(
            ["dex-server/cluster_role_binding.yaml"],
            ctx.values(
                cluster_role_binding_name=binding_name,
                cluster_role_name=CLUSTER_ROLE_NAME,
                service_account_name=SERVICE_ACCOUNT_NAME,
            ),
        )
        ctx.relate("ClusterRoleBinding", binding_name)

    async def sync_deployment(self, ctx: PassContext) -> None:
        if not self.dex_image:
            raise ConfigurationError(
                "required environment variable RELATED_IMAGE_DEX is empty or not set"
            )

        # Absent ConfigMap or mTLS secret: the annotation is omitted until it exists.
        config_map = await self.store.get_optional("ConfigMap", ctx.name, ctx.namespace)
        mtls_secret = await self.store.get_optional(
            "Secret", SECRET_MTLS_NAME, ctx.namespace
        )
        mtls_expiry = ""
        if mtls_secret is not None:
            annotations = mtls_secret["metadata"].get("annotations") or {}
            mtls_expiry = annotations.get(MTLS_CERT_EXPIRY_ANNOTATION, "")

        cert_volumes = ldap_cert_volumes(ctx.spec)
        await ctx.applier.apply_deployment(
            ["dex-server/deployment.yaml"],
            ctx.values(
                dex_image=self.dex_image,
                config_hash=fingerprint(config_map),
                mtls_secret_expiry=mtls_expiry,
                service_account_name=SERVICE_ACCOUNT_NAME,
                tls_secret_name=ctx.name + SECRET_WEB_TLS_SUFFIX,
                mtls_secret_name=SECRET_MTLS_NAME,
                additional_volume_mounts=cert_volumes.volume_mounts,
                additional_volumes=cert_volumes.volumes,
            ),
        )
        ctx.relate("Deployment", ctx.name, ctx.namespace)

    async def sync_ingress(self, ctx: PassContext) -> None:
        host = issuer_host(ctx.spec.issuer)
        await ctx.applier.apply_custom_resource(
            ["dex-server/ingress.yaml"],
            ctx.values(
                host=host,
                ingress_certificate_name=ctx.spec.ingress_certificate_ref.name,
            ),
        )
        ctx.relate("Ingress", ctx.name, ctx.namespace)


async def run_worker(
    queue: ReconcileQueue, reconciler: DexServerReconciler, worker_id: int = 0
) -> None:
    """
    Process queued DexServer keys until the queue shuts down.

    Completed passes are re-queued after their requeue delay and reset the
    key's backoff; failed passes are re-queued with backoff.
    """
    logger = OperatorLogger(f"{__name__}.worker")
    while True:
        try:
            key = await queue.get()
        except QueueShutDown:
            logger.debug(f"Reconcile worker {worker_id} stopping")
            return

        try:
            namespace, name = split_key(key)
            result = await reconciler.reconcile(namespace, name)
        except ReconciliationError as e:
            delay = queue.add_rate_limited(key)
            logger.warning(
                f"Pass for {key} stopped at '{e.step}', retrying in {delay:.0f}s",
                step=e.step,
                reason=e.reason,
            )
        except Exception as e:
            delay = queue.add_rate_limited(key)
            logger.error(
                f"Pass for {key} failed: {e}, retrying in {delay:.0f}s", exc_info=True
            )
        else:
            queue.forget(key)
            if result.requeue_after is not None:
                queue.add_after(key, result.requeue_after)
        finally:
            queue.done(key)
