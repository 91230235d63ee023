from __future__ import annotations

from types import SimpleNamespace

from volume_snapshot_backup.models import (
    FENCED_INSTANCES_ANNOTATION,
    ROLE_PG_DATA,
    ROLE_PG_WAL,
    BackupRecord,
    ClusterRecord,
    InstanceRecord,
    SnapshotRecord,
    VolumeRecord,
)

from conftest import cluster_object, snapshot_object


def test_cluster_record_from_object_with_snapshot_policy_parses_classes_and_metadata() -> None:
    obj = cluster_object(
        annotations={"team": "dba"},
        volume_snapshot={
            "className": "csi-fast",
            "walClassName": "csi-wal",
            "labels": {"tier": "gold"},
            "annotations": {"owner": "dba"},
        },
    )
    obj["metadata"]["resourceVersion"] = "42"

    cluster = ClusterRecord.from_object(obj)

    assert cluster.resource_version == "42"
    assert cluster.annotations == {"team": "dba"}
    assert cluster.snapshot_config is not None
    assert cluster.snapshot_config.class_for_role(ROLE_PG_DATA) == "csi-fast"
    assert cluster.snapshot_config.class_for_role(ROLE_PG_WAL) == "csi-wal"
    assert cluster.snapshot_config.labels == {"tier": "gold"}


def test_cluster_record_from_object_without_volume_snapshot_section_has_no_policy() -> None:
    obj = cluster_object()
    del obj["spec"]["backup"]

    assert ClusterRecord.from_object(obj).snapshot_config is None


def test_cluster_record_to_object_with_new_annotation_keeps_spec_and_other_annotations() -> None:
    obj = cluster_object(annotations={"team": "dba"})
    obj["metadata"]["resourceVersion"] = "7"
    cluster = ClusterRecord.from_object(obj)

    body = cluster.with_annotation(FENCED_INSTANCES_ANNOTATION, '["pg-2"]').to_object()

    assert body["spec"] == obj["spec"]
    assert body["metadata"]["resourceVersion"] == "7"
    assert body["metadata"]["annotations"] == {"team": "dba", FENCED_INSTANCES_ANNOTATION: '["pg-2"]'}
    assert cluster.annotations == {"team": "dba"}


def test_cluster_record_with_annotation_none_removes_the_key() -> None:
    cluster = ClusterRecord.from_object(cluster_object(fenced=["pg-2"]))

    updated = cluster.with_annotation(FENCED_INSTANCES_ANNOTATION, None)

    assert FENCED_INSTANCES_ANNOTATION not in updated.annotations


def test_snapshot_record_from_object_with_states_reports_pending_ready_and_failed() -> None:
    pending = SnapshotRecord.from_object(snapshot_object("a"))
    ready = SnapshotRecord.from_object(snapshot_object("b", ready=True))
    failed = SnapshotRecord.from_object(snapshot_object("c", ready=False, error="quota exceeded"))

    assert pending.is_pending and not pending.is_ready
    assert ready.is_ready and ready.creation_time == "2026-10-17T10:00:00Z"
    assert failed.has_failed and not failed.is_ready
    assert failed.error_message == "quota exceeded"


def test_snapshot_record_from_object_with_empty_error_message_uses_placeholder() -> None:
    obj = snapshot_object("c")
    obj["status"] = {"error": {}}

    assert SnapshotRecord.from_object(obj).error_message == "snapshot reported an error"


def test_backup_record_from_object_reads_uid_and_cluster_reference() -> None:
    backup = BackupRecord.from_object(
        {
            "metadata": {"namespace": "db", "name": "nightly", "uid": "uid-1"},
            "spec": {"cluster": {"name": "pg"}, "method": "volumeSnapshot"},
        }
    )

    assert backup == BackupRecord(namespace="db", name="nightly", uid="uid-1", cluster_name="pg")


def test_instance_record_from_pod_prefers_instance_name_label() -> None:
    pod = SimpleNamespace(
        metadata=SimpleNamespace(namespace="db", name="pg-2", labels={"cnpg.io/instanceName": "pg-2-instance"})
    )

    assert InstanceRecord.from_pod(pod).instance_name == "pg-2-instance"


def test_instance_record_from_pod_without_labels_falls_back_to_pod_name() -> None:
    pod = SimpleNamespace(metadata=SimpleNamespace(namespace="db", name="pg-2", labels=None))

    assert InstanceRecord.from_pod(pod) == InstanceRecord(namespace="db", pod_name="pg-2", instance_name="pg-2")


def test_volume_record_from_pvc_reads_role_label() -> None:
    pvc = SimpleNamespace(
        metadata=SimpleNamespace(namespace="db", name="pg-2-wal", labels={"cnpg.io/pvcRole": ROLE_PG_WAL})
    )

    assert VolumeRecord.from_pvc(pvc) == VolumeRecord(namespace="db", pvc_name="pg-2-wal", role=ROLE_PG_WAL)
