from __future__ import annotations

from typing import Iterable

from .models import ROLE_PG_DATA, ROLE_PG_WAL, VolumeRecord

WAL_SNAPSHOT_SUFFIX = "-wal"


class UnhandledRoleError(RuntimeError):
    """Raised when a volume role has no snapshot naming rule."""

    def __init__(self, role: str) -> None:
        super().__init__(f"unhandled role type: {role}")
        self.role = role


def snapshot_name_for(backup_name: str, role: str | None) -> str:
    if not role or role == ROLE_PG_DATA:
        return backup_name
    if role == ROLE_PG_WAL:
        return f"{backup_name}{WAL_SNAPSHOT_SUFFIX}"
    raise UnhandledRoleError(role)


def expected_snapshot_names(backup_name: str, volumes: Iterable[VolumeRecord]) -> dict[str, VolumeRecord]:
    """Map every snapshot name the backup needs to the volume it captures.

    All names are resolved before the caller mutates anything, so a single
    unhandled role aborts the whole backup step.
    """
    names: dict[str, VolumeRecord] = {}
    for volume in volumes:
        name = snapshot_name_for(backup_name, volume.role)
        if name in names:
            raise ValueError(
                f"volumes '{names[name].pvc_name}' and '{volume.pvc_name}' both map to snapshot name '{name}'"
            )
        names[name] = volume
    return names
