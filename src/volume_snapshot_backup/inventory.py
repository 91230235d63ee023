from __future__ import annotations

from .k8s import KubernetesStoreError, SnapshotStore
from .models import BACKUP_NAME_LABEL, SnapshotRecord


class InventoryReadError(RuntimeError):
    """Raised when the snapshots of a backup cannot be listed."""


class SnapshotInventory:
    """Finds the snapshots of a backup by correlation label, independent of their names."""

    def __init__(self, snapshot_store: SnapshotStore) -> None:
        self.snapshot_store = snapshot_store

    def list_for_backup(self, namespace: str, backup_name: str) -> list[SnapshotRecord]:
        try:
            snapshots = self.snapshot_store.list_snapshots(namespace, f"{BACKUP_NAME_LABEL}={backup_name}")
        except KubernetesStoreError as error:
            raise InventoryReadError(
                f"unable to list snapshots for backup '{namespace}/{backup_name}': {error}"
            ) from error

        # Label selectors are trusted, but a mislabeled object must never count toward readiness.
        matching = [snapshot for snapshot in snapshots if snapshot.labels.get(BACKUP_NAME_LABEL) == backup_name]
        return sorted(matching, key=lambda snapshot: snapshot.name)
