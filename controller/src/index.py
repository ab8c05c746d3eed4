from __future__ import annotations

import threading
from collections.abc import Iterable


class WorkloadIndex:
    """Process-local map from a service binding key to the deployments it targets.

    Written by the workload service reconciler and read in reverse by the pod
    backfill reconciler.  Two maps are kept under one lock:

        ``_targets``
            service key -> frozenset of deployment keys.
        ``_targeted_by``
            deployment key -> set of service keys, updated incrementally by
            :meth:`put` and :meth:`delete` so reverse lookups never scan.

    Every read returns an immutable ``frozenset`` snapshot.  The index is not
    persisted; after a restart it is rebuilt by the resync of all services.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._targets: dict[str, frozenset[str]] = {}
        self._targeted_by: dict[str, set[str]] = {}

    def put(self, service_key: str, deployment_keys: Iterable[str]) -> None:
        """Replace the full target set of *service_key* (no merge with the previous set)."""
        new_targets = frozenset(deployment_keys)
        with self._lock:
            previous = self._targets.get(service_key, frozenset())
            for deployment_key in previous - new_targets:
                self._unlink(deployment_key, service_key)
            for deployment_key in new_targets - previous:
                self._targeted_by.setdefault(deployment_key, set()).add(service_key)
            self._targets[service_key] = new_targets

    def delete(self, service_key: str) -> bool:
        """Remove *service_key*; returns False when no entry existed."""
        with self._lock:
            previous = self._targets.pop(service_key, None)
            if previous is None:
                return False
            for deployment_key in previous:
                self._unlink(deployment_key, service_key)
            return True

    def _unlink(self, deployment_key: str, service_key: str) -> None:
        services = self._targeted_by.get(deployment_key)
        if services is None:
            return
        services.discard(service_key)
        if not services:
            del self._targeted_by[deployment_key]

    def get(self, service_key: str) -> frozenset[str] | None:
        with self._lock:
            return self._targets.get(service_key)

    def find_services_targeting(self, deployment_key: str) -> frozenset[str]:
        """Return the service keys whose current target set contains *deployment_key*."""
        with self._lock:
            return frozenset(self._targeted_by.get(deployment_key, ()))

    def __contains__(self, service_key: object) -> bool:
        with self._lock:
            return service_key in self._targets

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)
