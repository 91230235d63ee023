from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

ROLE_LABEL = "cnpg.io/pvcRole"
INSTANCE_NAME_LABEL = "cnpg.io/instanceName"
CLUSTER_LABEL = "cnpg.io/cluster"
BACKUP_NAME_LABEL = "cnpg.io/backupName"
FENCED_INSTANCES_ANNOTATION = "cnpg.io/fencedInstances"

ROLE_PG_DATA = "PG_DATA"
ROLE_PG_WAL = "PG_WAL"
ROLE_PG_TABLESPACE = "PG_TABLESPACE"


@dataclass(frozen=True)
class VolumeSnapshotConfig:
    class_name: str | None = None
    wal_class_name: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_spec(cls, spec: Mapping[str, Any] | None) -> VolumeSnapshotConfig | None:
        if not spec:
            return None
        return cls(
            class_name=spec.get("className") or None,
            wal_class_name=spec.get("walClassName") or None,
            labels=dict(spec.get("labels") or {}),
            annotations=dict(spec.get("annotations") or {}),
        )

    def class_for_role(self, role: str | None) -> str | None:
        if role == ROLE_PG_WAL and self.wal_class_name:
            return self.wal_class_name
        return self.class_name


@dataclass(frozen=True)
class ClusterRecord:
    namespace: str
    name: str
    resource_version: str | None
    annotations: Mapping[str, str]
    snapshot_config: VolumeSnapshotConfig | None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> ClusterRecord:
        metadata = obj.get("metadata") or {}
        backup_spec = (obj.get("spec") or {}).get("backup") or {}
        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            resource_version=metadata.get("resourceVersion"),
            annotations=dict(metadata.get("annotations") or {}),
            snapshot_config=VolumeSnapshotConfig.from_spec(backup_spec.get("volumeSnapshot")),
            raw=deepcopy(dict(obj)),
        )

    def with_annotation(self, key: str, value: str | None) -> ClusterRecord:
        annotations = dict(self.annotations)
        if value is None:
            annotations.pop(key, None)
        else:
            annotations[key] = value
        return replace(self, annotations=annotations)

    def to_object(self) -> dict[str, Any]:
        body = deepcopy(dict(self.raw))
        metadata = body.setdefault("metadata", {})
        metadata["namespace"] = self.namespace
        metadata["name"] = self.name
        metadata["annotations"] = dict(self.annotations)
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        return body


@dataclass(frozen=True)
class BackupRecord:
    namespace: str
    name: str
    uid: str | None = None
    cluster_name: str | None = None

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> BackupRecord:
        metadata = obj.get("metadata") or {}
        cluster_ref = (obj.get("spec") or {}).get("cluster") or {}
        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            uid=metadata.get("uid"),
            cluster_name=cluster_ref.get("name"),
        )


@dataclass(frozen=True)
class InstanceRecord:
    namespace: str
    pod_name: str
    instance_name: str

    @classmethod
    def from_pod(cls, pod: Any) -> InstanceRecord:
        metadata = pod.metadata
        labels = metadata.labels or {}
        return cls(
            namespace=metadata.namespace or "",
            pod_name=metadata.name or "",
            instance_name=labels.get(INSTANCE_NAME_LABEL) or metadata.name or "",
        )


@dataclass(frozen=True)
class VolumeRecord:
    namespace: str
    pvc_name: str
    role: str | None

    @classmethod
    def from_pvc(cls, pvc: Any) -> VolumeRecord:
        metadata = pvc.metadata
        labels = metadata.labels or {}
        return cls(
            namespace=metadata.namespace or "",
            pvc_name=metadata.name or "",
            role=labels.get(ROLE_LABEL),
        )


@dataclass(frozen=True)
class SnapshotRecord:
    namespace: str
    name: str
    labels: Mapping[str, str]
    ready_to_use: bool | None = None
    error_message: str | None = None
    creation_time: str | None = None

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> SnapshotRecord:
        metadata = obj.get("metadata") or {}
        status = obj.get("status") or {}
        error = status.get("error")
        error_message = None
        if error is not None:
            error_message = (error.get("message") or "").strip() or "snapshot reported an error"
        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            labels=dict(metadata.get("labels") or {}),
            ready_to_use=status.get("readyToUse"),
            error_message=error_message,
            creation_time=status.get("creationTime"),
        )

    @property
    def is_ready(self) -> bool:
        return self.ready_to_use is True

    @property
    def has_failed(self) -> bool:
        return self.error_message is not None

    @property
    def is_pending(self) -> bool:
        return not self.is_ready and not self.has_failed


@dataclass(frozen=True)
class ExecutionResult:
    requeue_after_seconds: int
