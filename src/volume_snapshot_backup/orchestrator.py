"""One reconciliation step of a volume-snapshot backup.

Every call starts from what is observable in the cluster: the snapshots
labelled with the backup name and the fenced-instances annotation. Nothing
is carried between calls, so a restarted controller resumes where the
previous one stopped.
"""

from __future__ import annotations

from enum import Enum
import logging
from typing import Any, Iterable

from .config import AppConfig
from .events import NORMAL, WARNING, EventReporter
from .fencing import DEFAULT_MAX_UPDATE_ATTEMPTS, FencingManager, is_fenced
from .inventory import SnapshotInventory
from .k8s import (
    SNAPSHOT_GROUP,
    SNAPSHOT_VERSION,
    ClusterStore,
    KubernetesClients,
    KubernetesStoreError,
    ResourceAlreadyExistsError,
    SnapshotStore,
)
from .models import (
    BACKUP_NAME_LABEL,
    CLUSTER_LABEL,
    INSTANCE_NAME_LABEL,
    ROLE_LABEL,
    BackupRecord,
    ClusterRecord,
    ExecutionResult,
    InstanceRecord,
    SnapshotRecord,
    VolumeRecord,
)
from .naming import UnhandledRoleError, expected_snapshot_names, snapshot_name_for

DEFAULT_REQUEUE_AFTER_SECONDS = 10

logger = logging.getLogger(__name__)


class BackupState(Enum):
    NO_SNAPSHOTS = "no-snapshots"
    AWAITING_READINESS = "awaiting-readiness"
    COMPLETE = "complete"


class MissingSnapshotConfigurationError(RuntimeError):
    """Raised when the cluster has no volume snapshot backup policy."""


class SnapshotCreationError(RuntimeError):
    def __init__(self, *, snapshot_name: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"creating volume snapshot '{snapshot_name}' failed: {normalized_reason}")
        self.snapshot_name = snapshot_name


def derive_state(
    snapshots: Iterable[SnapshotRecord],
    *,
    expected_names: Iterable[str] | None = None,
) -> BackupState:
    """Classify the backup from its snapshot inventory.

    Without ``expected_names`` the backup is complete once every snapshot
    found is ready. With them, each expected name must also be present.
    """
    snapshots = list(snapshots)
    if not snapshots:
        return BackupState.NO_SNAPSHOTS
    if not all(snapshot.is_ready for snapshot in snapshots):
        return BackupState.AWAITING_READINESS
    if expected_names is not None:
        found = {snapshot.name for snapshot in snapshots}
        if not set(expected_names).issubset(found):
            return BackupState.AWAITING_READINESS
    return BackupState.COMPLETE


class BackupOrchestrator:
    def __init__(
        self,
        *,
        cluster_store: ClusterStore,
        snapshot_store: SnapshotStore,
        event_reporter: EventReporter,
        fence_instance: bool = True,
        requeue_after_seconds: int = DEFAULT_REQUEUE_AFTER_SECONDS,
        fence_update_attempts: int = DEFAULT_MAX_UPDATE_ATTEMPTS,
        strict_volume_matching: bool = False,
    ) -> None:
        if requeue_after_seconds <= 0:
            raise ValueError("requeue_after_seconds must be positive")
        self.cluster_store = cluster_store
        self.snapshot_store = snapshot_store
        self.event_reporter = event_reporter
        self.fence_instance = fence_instance
        self.requeue_after_seconds = requeue_after_seconds
        self.strict_volume_matching = strict_volume_matching
        self.inventory = SnapshotInventory(snapshot_store)
        self.fencing = FencingManager(cluster_store, max_attempts=fence_update_attempts)

    @classmethod
    def from_config(cls, clients: KubernetesClients, config: AppConfig) -> BackupOrchestrator:
        return cls(
            cluster_store=ClusterStore(
                clients.custom_objects_api,
                request_timeout_seconds=config.request_timeout_seconds,
            ),
            snapshot_store=SnapshotStore(
                clients.custom_objects_api,
                request_timeout_seconds=config.request_timeout_seconds,
            ),
            event_reporter=EventReporter(
                clients.core_api,
                component=config.event_component,
                request_timeout_seconds=config.request_timeout_seconds,
            ),
            fence_instance=config.fence_instance,
            requeue_after_seconds=config.requeue_after_seconds,
            fence_update_attempts=config.fence_update_attempts,
            strict_volume_matching=config.strict_volume_matching,
        )

    def execute(
        self,
        cluster: ClusterRecord | None,
        backup: BackupRecord,
        target: InstanceRecord,
        volumes: list[VolumeRecord],
    ) -> ExecutionResult | None:
        """Advance the backup by one step.

        Returns ``None`` once every snapshot is ready and the instance has been
        unfenced, otherwise an ``ExecutionResult`` telling the caller when to
        call again.
        """
        if cluster is None:
            raise ValueError("cluster is required")
        if cluster.snapshot_config is None:
            raise MissingSnapshotConfigurationError(
                f"cluster '{cluster.namespace}/{cluster.name}' has no volume snapshot backup configuration"
            )
        if not volumes:
            raise ValueError(f"instance '{target.instance_name}' has no volumes to snapshot")

        snapshots = self.inventory.list_for_backup(backup.namespace, backup.name)
        expected_names = None
        if self.strict_volume_matching:
            expected_names = list(expected_snapshot_names(backup.name, volumes))
        state = derive_state(snapshots, expected_names=expected_names)
        logger.info(
            "backup %s/%s: %d snapshot(s) found, state=%s",
            backup.namespace,
            backup.name,
            len(snapshots),
            state.value,
        )

        if state is BackupState.NO_SNAPSHOTS:
            return self._request_snapshots(cluster, backup, target, expected_snapshot_names(backup.name, volumes))
        _log_unmatched_snapshots(backup, snapshots, volumes)
        if state is BackupState.AWAITING_READINESS:
            missing = self._missing_snapshots(backup, snapshots, volumes)
            if missing:
                logger.info(
                    "backup %s/%s is missing snapshot(s): %s",
                    backup.namespace,
                    backup.name,
                    ", ".join(sorted(missing)),
                )
                return self._request_snapshots(cluster, backup, target, missing)
            return self._await_readiness(backup, snapshots)
        return self._complete(cluster, backup, target)

    def _missing_snapshots(
        self,
        backup: BackupRecord,
        snapshots: list[SnapshotRecord],
        volumes: list[VolumeRecord],
    ) -> dict[str, VolumeRecord]:
        if not self.strict_volume_matching:
            return {}
        found = {snapshot.name for snapshot in snapshots}
        return {
            name: volume
            for name, volume in expected_snapshot_names(backup.name, volumes).items()
            if name not in found
        }

    def _request_snapshots(
        self,
        cluster: ClusterRecord,
        backup: BackupRecord,
        target: InstanceRecord,
        snapshot_names: dict[str, VolumeRecord],
    ) -> ExecutionResult:
        # Snapshots of a still-writing instance are not crash consistent as a set.
        if self.fence_instance:
            already_fenced = is_fenced(cluster, target.instance_name)
            self.fencing.fence(cluster, target.instance_name)
            if not already_fenced:
                self.event_reporter.report(
                    NORMAL,
                    "InstanceFenced",
                    f"Fenced instance {target.instance_name} to take volume snapshots",
                    involved=backup,
                )

        for snapshot_name, volume in snapshot_names.items():
            self._create_snapshot(
                snapshot_name,
                body=_snapshot_body(snapshot_name, cluster=cluster, backup=backup, target=target, volume=volume),
                namespace=backup.namespace,
            )

        self.event_reporter.report(
            NORMAL,
            "SnapshotsRequested",
            f"Requested volume snapshots: {', '.join(sorted(snapshot_names))}",
            involved=backup,
        )
        return ExecutionResult(requeue_after_seconds=self.requeue_after_seconds)

    def _create_snapshot(self, snapshot_name: str, *, body: dict[str, Any], namespace: str) -> None:
        try:
            self.snapshot_store.create_snapshot(namespace, body)
        except ResourceAlreadyExistsError:
            logger.debug("volume snapshot %s/%s already exists", namespace, snapshot_name)
            return
        except KubernetesStoreError as error:
            raise SnapshotCreationError(snapshot_name=snapshot_name, reason=str(error)) from error
        logger.info("created volume snapshot %s/%s", namespace, snapshot_name)

    def _await_readiness(self, backup: BackupRecord, snapshots: list[SnapshotRecord]) -> ExecutionResult:
        for snapshot in snapshots:
            if snapshot.has_failed:
                self.event_reporter.report(
                    WARNING,
                    "SnapshotError",
                    f"Volume snapshot {snapshot.name} reported an error: {snapshot.error_message}",
                    involved=backup,
                )
        pending = [snapshot.name for snapshot in snapshots if snapshot.is_pending]
        logger.info(
            "backup %s/%s waiting for snapshot(s): %s",
            backup.namespace,
            backup.name,
            ", ".join(pending) or "<none pending>",
        )
        return ExecutionResult(requeue_after_seconds=self.requeue_after_seconds)

    def _complete(self, cluster: ClusterRecord, backup: BackupRecord, target: InstanceRecord) -> None:
        if self.fence_instance:
            self.fencing.unfence(cluster, target.instance_name)
        self.event_reporter.report(
            NORMAL,
            "SnapshotsReady",
            f"All volume snapshots are ready; instance {target.instance_name} released",
            involved=backup,
        )
        return None


def _snapshot_body(
    snapshot_name: str,
    *,
    cluster: ClusterRecord,
    backup: BackupRecord,
    target: InstanceRecord,
    volume: VolumeRecord,
) -> dict[str, Any]:
    policy = cluster.snapshot_config
    labels: dict[str, str] = dict(policy.labels) if policy else {}
    labels.update(
        {
            BACKUP_NAME_LABEL: backup.name,
            CLUSTER_LABEL: cluster.name,
            INSTANCE_NAME_LABEL: target.instance_name,
        }
    )
    if volume.role:
        labels[ROLE_LABEL] = volume.role

    metadata: dict[str, Any] = {
        "name": snapshot_name,
        "namespace": backup.namespace,
        "labels": labels,
        "annotations": dict(policy.annotations) if policy else {},
    }
    if backup.uid:
        metadata["ownerReferences"] = [
            {
                "apiVersion": "postgresql.cnpg.io/v1",
                "kind": "Backup",
                "name": backup.name,
                "uid": backup.uid,
            }
        ]

    spec: dict[str, Any] = {"source": {"persistentVolumeClaimName": volume.pvc_name}}
    class_name = policy.class_for_role(volume.role) if policy else None
    if class_name:
        spec["volumeSnapshotClassName"] = class_name

    return {
        "apiVersion": f"{SNAPSHOT_GROUP}/{SNAPSHOT_VERSION}",
        "kind": "VolumeSnapshot",
        "metadata": metadata,
        "spec": spec,
    }


def _log_unmatched_snapshots(
    backup: BackupRecord,
    snapshots: list[SnapshotRecord],
    volumes: list[VolumeRecord],
) -> None:
    known_names = set()
    for volume in volumes:
        try:
            known_names.add(snapshot_name_for(backup.name, volume.role))
        except UnhandledRoleError as error:
            logger.warning("backup %s: %s (volume %s)", backup.name, error, volume.pvc_name)
    for snapshot in snapshots:
        if snapshot.name not in known_names:
            logger.warning(
                "backup %s: snapshot %s matches no current volume and still counts toward readiness",
                backup.name,
                snapshot.name,
            )
