from __future__ import annotations

import json
import logging
from typing import Callable, Iterable, Iterator

from .k8s import ClusterStore, KubernetesStoreError, ResourceConflictError
from .models import FENCED_INSTANCES_ANNOTATION, ClusterRecord

FENCE_ALL_INSTANCES = "*"
DEFAULT_MAX_UPDATE_ATTEMPTS = 5

logger = logging.getLogger(__name__)


class InvalidFencingAnnotationError(RuntimeError):
    """Raised when the fenced-instances annotation is not a JSON list of names."""


class FencingError(RuntimeError):
    """Raised when the fenced-instances set cannot be persisted."""


class ConcurrentUpdateError(FencingError):
    def __init__(self, *, operation: str, cluster: str, attempts: int) -> None:
        super().__init__(
            f"{operation} on cluster '{cluster}' lost {attempts} consecutive optimistic-concurrency races; "
            "retry on the next reconciliation"
        )
        self.attempts = attempts


class FencedInstances:
    """Set of fenced instance names stored in a cluster annotation."""

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._names: set[str] = set(names)

    @classmethod
    def parse(cls, value: str | None) -> FencedInstances:
        if value is None or not value.strip():
            return cls()
        try:
            decoded = json.loads(value)
        except ValueError as error:
            raise InvalidFencingAnnotationError(
                f"annotation {FENCED_INSTANCES_ANNOTATION} is not valid JSON: {value!r}"
            ) from error
        if not isinstance(decoded, list) or not all(isinstance(item, str) for item in decoded):
            raise InvalidFencingAnnotationError(
                f"annotation {FENCED_INSTANCES_ANNOTATION} must be a JSON list of strings: {value!r}"
            )
        return cls(decoded)

    @classmethod
    def from_cluster(cls, cluster: ClusterRecord) -> FencedInstances:
        return cls.parse(cluster.annotations.get(FENCED_INSTANCES_ANNOTATION))

    def serialize(self) -> str | None:
        if not self._names:
            return None
        return json.dumps(sorted(self._names))

    def add(self, name: str) -> bool:
        if name in self._names:
            return False
        self._names.add(name)
        return True

    def remove(self, name: str) -> bool:
        if name not in self._names:
            return False
        self._names.discard(name)
        return True

    def covers(self, name: str) -> bool:
        return name in self._names or FENCE_ALL_INSTANCES in self._names

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._names))

    def __len__(self) -> int:
        return len(self._names)


def is_fenced(cluster: ClusterRecord, member: str) -> bool:
    return FencedInstances.from_cluster(cluster).covers(member)


class FencingManager:
    def __init__(self, cluster_store: ClusterStore, *, max_attempts: int = DEFAULT_MAX_UPDATE_ATTEMPTS) -> None:
        # A stale record always loses the first write.
        if max_attempts < 2:
            raise ValueError("max_attempts must be at least 2")
        self.cluster_store = cluster_store
        self.max_attempts = max_attempts

    def fence(self, cluster: ClusterRecord, member: str) -> ClusterRecord:
        return self._update(cluster, operation=f"fence instance '{member}'", mutate=lambda names: names.add(member))

    def unfence(self, cluster: ClusterRecord, member: str) -> ClusterRecord:
        return self._update(
            cluster,
            operation=f"unfence instance '{member}'",
            mutate=lambda names: names.remove(member),
        )

    def _update(
        self,
        cluster: ClusterRecord,
        *,
        operation: str,
        mutate: Callable[[FencedInstances], bool],
    ) -> ClusterRecord:
        cluster_key = f"{cluster.namespace}/{cluster.name}"
        current = cluster
        for attempt in range(1, self.max_attempts + 1):
            fenced = FencedInstances.from_cluster(current)
            if not mutate(fenced):
                return current

            try:
                updated = self.cluster_store.replace_cluster(
                    current.with_annotation(FENCED_INSTANCES_ANNOTATION, fenced.serialize())
                )
            except ResourceConflictError:
                logger.debug("%s on %s conflicted (attempt %d/%d)", operation, cluster_key, attempt, self.max_attempts)
                if attempt < self.max_attempts:
                    current = self._reload(current, operation=operation)
                continue
            except KubernetesStoreError as error:
                raise FencingError(f"{operation} on cluster '{cluster_key}' failed: {error}") from error

            logger.info("%s on cluster %s", operation, cluster_key)
            return updated

        raise ConcurrentUpdateError(operation=operation, cluster=cluster_key, attempts=self.max_attempts)

    def _reload(self, cluster: ClusterRecord, *, operation: str) -> ClusterRecord:
        try:
            return self.cluster_store.get_cluster(cluster.namespace, cluster.name)
        except KubernetesStoreError as error:
            raise FencingError(
                f"{operation} on cluster '{cluster.namespace}/{cluster.name}' failed to re-read the cluster: {error}"
            ) from error
