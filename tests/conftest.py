from __future__ import annotations

from copy import deepcopy
import json
from typing import Any, Callable
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from volume_snapshot_backup.k8s import ClusterStore, SnapshotStore
from volume_snapshot_backup.models import (
    BACKUP_NAME_LABEL,
    FENCED_INSTANCES_ANNOTATION,
    ROLE_PG_DATA,
    ROLE_PG_WAL,
    BackupRecord,
    ClusterRecord,
    InstanceRecord,
    VolumeRecord,
)

NAMESPACE = "test-namespace"
CLUSTER_NAME = "cluster-example"
BACKUP_NAME = "the-backup"
INSTANCE_NAME = f"{CLUSTER_NAME}-2"


class FakeCustomObjectsApi:
    """In-memory stand-in for CustomObjectsApi with resourceVersion checks."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.replace_hooks: list[Callable[[], None]] = []
        self.replace_calls = 0
        self.create_calls = 0
        self.stale_lists = False
        self._revision = 0

    def add(self, plural: str, obj: dict[str, Any]) -> dict[str, Any]:
        stored = deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        metadata["resourceVersion"] = self._next_revision()
        self.objects[(plural, metadata["namespace"], metadata["name"])] = stored
        return deepcopy(stored)

    def items(self, plural: str) -> list[dict[str, Any]]:
        return [deepcopy(obj) for (kind, _, _), obj in sorted(self.objects.items()) if kind == plural]

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, **_kwargs):
        key = (plural, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return deepcopy(self.objects[key])

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body, **_kwargs):
        self.replace_calls += 1
        if self.replace_hooks:
            self.replace_hooks.pop(0)()
        key = (plural, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        current_version = self.objects[key]["metadata"]["resourceVersion"]
        if body["metadata"].get("resourceVersion") != current_version:
            raise ApiException(status=409, reason="Conflict")
        return self.add(plural, body)

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None, **_kwargs):
        if self.stale_lists:
            return {"items": []}
        selector: dict[str, str] = {}
        if label_selector:
            for term in label_selector.split(","):
                key, _, value = term.partition("=")
                selector[key] = value
        items = [
            obj
            for obj in self.items(plural)
            if obj["metadata"]["namespace"] == namespace
            and all((obj["metadata"].get("labels") or {}).get(key) == value for key, value in selector.items())
        ]
        return {"items": items}

    def create_namespaced_custom_object(self, group, version, namespace, plural, body, **_kwargs):
        self.create_calls += 1
        key = (plural, namespace, body["metadata"]["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        return self.add(plural, body)

    def _next_revision(self) -> str:
        self._revision += 1
        return str(self._revision)


def cluster_object(
    *,
    fenced: list[str] | None = None,
    annotations: dict[str, str] | None = None,
    volume_snapshot: dict[str, Any] | None = None,
) -> dict[str, Any]:
    metadata_annotations = dict(annotations or {})
    if fenced is not None:
        metadata_annotations[FENCED_INSTANCES_ANNOTATION] = json.dumps(fenced)
    return {
        "apiVersion": "postgresql.cnpg.io/v1",
        "kind": "Cluster",
        "metadata": {
            "namespace": NAMESPACE,
            "name": CLUSTER_NAME,
            "annotations": metadata_annotations,
        },
        "spec": {
            "instances": 3,
            "backup": {
                "volumeSnapshot": volume_snapshot
                if volume_snapshot is not None
                else {"className": "csi-hostpath-snapclass"},
            },
        },
    }


def snapshot_object(
    name: str,
    *,
    backup_name: str = BACKUP_NAME,
    ready: bool | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "apiVersion": "snapshot.storage.k8s.io/v1",
        "kind": "VolumeSnapshot",
        "metadata": {
            "namespace": NAMESPACE,
            "name": name,
            "labels": {BACKUP_NAME_LABEL: backup_name},
        },
    }
    status: dict[str, Any] = {}
    if ready is not None:
        status["readyToUse"] = ready
        status["creationTime"] = "2026-10-17T10:00:00Z"
    if error is not None:
        status["error"] = {"message": error, "time": "2026-10-17T10:00:01Z"}
    if status:
        obj["status"] = status
    return obj


def fenced_instances(api: FakeCustomObjectsApi) -> list[str]:
    cluster = api.get_namespaced_custom_object("postgresql.cnpg.io", "v1", NAMESPACE, "clusters", CLUSTER_NAME)
    value = (cluster["metadata"].get("annotations") or {}).get(FENCED_INSTANCES_ANNOTATION)
    return json.loads(value) if value else []


@pytest.fixture
def fake_api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()


@pytest.fixture
def cluster_store(fake_api: FakeCustomObjectsApi) -> ClusterStore:
    return ClusterStore(fake_api)  # type: ignore[arg-type]


@pytest.fixture
def snapshot_store(fake_api: FakeCustomObjectsApi) -> SnapshotStore:
    return SnapshotStore(fake_api)  # type: ignore[arg-type]


@pytest.fixture
def event_reporter() -> Mock:
    return Mock()


@pytest.fixture
def backup() -> BackupRecord:
    return BackupRecord(namespace=NAMESPACE, name=BACKUP_NAME, uid="backup-uid-1", cluster_name=CLUSTER_NAME)


@pytest.fixture
def target() -> InstanceRecord:
    return InstanceRecord(namespace=NAMESPACE, pod_name=INSTANCE_NAME, instance_name=INSTANCE_NAME)


@pytest.fixture
def volumes() -> list[VolumeRecord]:
    return [
        VolumeRecord(namespace=NAMESPACE, pvc_name=INSTANCE_NAME, role=ROLE_PG_DATA),
        VolumeRecord(namespace=NAMESPACE, pvc_name=f"{INSTANCE_NAME}-wal", role=ROLE_PG_WAL),
    ]


def stored_cluster(api: FakeCustomObjectsApi, obj: dict[str, Any]) -> ClusterRecord:
    return ClusterRecord.from_object(api.add("clusters", obj))
