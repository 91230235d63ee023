from __future__ import annotations

from datetime import UTC, datetime
import logging

from kubernetes import client

from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS
from .models import BackupRecord

NORMAL = "Normal"
WARNING = "Warning"

BACKUP_API_VERSION = "postgresql.cnpg.io/v1"
BACKUP_KIND = "Backup"

logger = logging.getLogger(__name__)


class EventReporter:
    """Best-effort emission of Kubernetes events about a backup.

    Failures are logged and dropped; they never change the outcome of a
    reconciliation step.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        *,
        component: str = "volume-snapshot-backup",
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.request_timeout_seconds = request_timeout_seconds

    def report(self, severity: str, reason: str, message: str, *, involved: BackupRecord) -> None:
        try:
            self.core_api.create_namespaced_event(
                namespace=involved.namespace,
                body=self._build_event(severity, reason, message, involved=involved),
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as error:  # pylint: disable=broad-except
            logger.debug("dropping %s event %s for backup %s: %s", severity, reason, involved.name, error)

    def _build_event(self, severity: str, reason: str, message: str, *, involved: BackupRecord) -> client.CoreV1Event:
        now = datetime.now(tz=UTC)
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{involved.name}.", namespace=involved.namespace),
            involved_object=client.V1ObjectReference(
                api_version=BACKUP_API_VERSION,
                kind=BACKUP_KIND,
                name=involved.name,
                namespace=involved.namespace,
                uid=involved.uid,
            ),
            type=severity,
            reason=reason,
            message=message,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
