from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import BackupRecord, ClusterRecord, InstanceRecord, SnapshotRecord, VolumeRecord

CLUSTER_GROUP = "postgresql.cnpg.io"
CLUSTER_VERSION = "v1"
CLUSTER_PLURAL = "clusters"
BACKUP_PLURAL = "backups"

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_objects_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesStoreError(RuntimeError):
    """Raised when a control-plane read or write cannot be completed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ResourceConflictError(KubernetesStoreError):
    """Raised when a write loses an optimistic-concurrency race."""


class ResourceAlreadyExistsError(KubernetesStoreError):
    """Raised when creating an object whose name is already taken."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


class ClusterStore:
    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.custom_objects_api = custom_objects_api
        self.request_timeout_seconds = request_timeout_seconds

    def get_cluster(self, namespace: str, name: str) -> ClusterRecord:
        obj = _safe_kubernetes_call(
            operation=f"read cluster '{namespace}/{name}'",
            hint="Verify the cluster exists and RBAC allows get on clusters.postgresql.cnpg.io.",
            func=lambda: self.custom_objects_api.get_namespaced_custom_object(
                CLUSTER_GROUP,
                CLUSTER_VERSION,
                namespace,
                CLUSTER_PLURAL,
                name,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return ClusterRecord.from_object(obj)

    def replace_cluster(self, cluster: ClusterRecord) -> ClusterRecord:
        """Write the cluster back, conditioned on the resource version it was read at."""
        obj = _safe_kubernetes_call(
            operation=f"update cluster '{cluster.namespace}/{cluster.name}'",
            hint="Verify RBAC allows update on clusters.postgresql.cnpg.io.",
            func=lambda: self.custom_objects_api.replace_namespaced_custom_object(
                CLUSTER_GROUP,
                CLUSTER_VERSION,
                cluster.namespace,
                CLUSTER_PLURAL,
                cluster.name,
                cluster.to_object(),
                _request_timeout=self.request_timeout_seconds,
            ),
            conflict_error=ResourceConflictError,
        )
        return ClusterRecord.from_object(obj)


class SnapshotStore:
    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.custom_objects_api = custom_objects_api
        self.request_timeout_seconds = request_timeout_seconds

    def list_snapshots(self, namespace: str, label_selector: str) -> list[SnapshotRecord]:
        response = _safe_kubernetes_call(
            operation=f"list volume snapshots in namespace '{namespace}' matching '{label_selector}'",
            hint="Verify the snapshot CRDs are installed and RBAC allows list on volumesnapshots.",
            func=lambda: self.custom_objects_api.list_namespaced_custom_object(
                SNAPSHOT_GROUP,
                SNAPSHOT_VERSION,
                namespace,
                SNAPSHOT_PLURAL,
                label_selector=label_selector,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return [SnapshotRecord.from_object(item) for item in response.get("items") or []]

    def create_snapshot(self, namespace: str, body: dict[str, Any]) -> None:
        name = (body.get("metadata") or {}).get("name") or "<unnamed>"
        _safe_kubernetes_call(
            operation=f"create volume snapshot '{namespace}/{name}'",
            hint="Verify RBAC allows create on volumesnapshots and the snapshot class exists.",
            func=lambda: self.custom_objects_api.create_namespaced_custom_object(
                SNAPSHOT_GROUP,
                SNAPSHOT_VERSION,
                namespace,
                SNAPSHOT_PLURAL,
                body,
                _request_timeout=self.request_timeout_seconds,
            ),
            conflict_error=ResourceAlreadyExistsError,
        )


def read_backup(
    clients: KubernetesClients,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> BackupRecord:
    obj = _safe_kubernetes_call(
        operation=f"read backup '{namespace}/{name}'",
        hint="Verify the backup exists and RBAC allows get on backups.postgresql.cnpg.io.",
        func=lambda: clients.custom_objects_api.get_namespaced_custom_object(
            CLUSTER_GROUP,
            CLUSTER_VERSION,
            namespace,
            BACKUP_PLURAL,
            name,
            _request_timeout=request_timeout_seconds,
        ),
    )
    return BackupRecord.from_object(obj)


def read_instance(
    clients: KubernetesClients,
    *,
    namespace: str,
    pod_name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> tuple[InstanceRecord, Any]:
    pod = _safe_kubernetes_call(
        operation=f"read pod '{namespace}/{pod_name}'",
        hint="Verify the instance pod exists and RBAC allows get on pods.",
        func=lambda: clients.core_api.read_namespaced_pod(
            name=pod_name,
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        ),
    )
    return InstanceRecord.from_pod(pod), pod


def list_instance_volumes(
    clients: KubernetesClients,
    *,
    pod: Any,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[VolumeRecord]:
    namespace = pod.metadata.namespace or ""
    claim_names: list[str] = []
    for volume in pod.spec.volumes or []:
        pvc_source = volume.persistent_volume_claim
        if not pvc_source or not pvc_source.claim_name:
            continue
        if pvc_source.claim_name not in claim_names:
            claim_names.append(pvc_source.claim_name)

    records: list[VolumeRecord] = []
    for claim_name in claim_names:
        pvc = _safe_kubernetes_call(
            operation=f"read PVC '{namespace}/{claim_name}'",
            hint="Verify RBAC allows get on persistentvolumeclaims.",
            func=lambda claim_name=claim_name: clients.core_api.read_namespaced_persistent_volume_claim(
                name=claim_name,
                namespace=namespace,
                _request_timeout=request_timeout_seconds,
            ),
        )
        records.append(VolumeRecord.from_pvc(pvc))
    return records


def _safe_kubernetes_call(
    *,
    operation: str,
    hint: str,
    func: Callable[[], T],
    conflict_error: type[KubernetesStoreError] | None = None,
) -> T:
    try:
        return func()
    except ApiException as error:
        message = _format_api_exception_message(operation=operation, hint=hint, error=error)
        if error.status == 409 and conflict_error is not None:
            raise conflict_error(message, status=error.status) from error
        raise KubernetesStoreError(message, status=error.status) from error
    except Exception as error:
        raise KubernetesStoreError(f"{operation} failed: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"{operation} failed: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
