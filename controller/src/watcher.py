from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from controller.src.metrics import METRICS
from controller.src.workqueue import WorkQueue


@dataclass(frozen=True)
class ResourceKind:
    """List functions for one resource kind, cluster-wide and namespaced."""

    name: str
    list_all: Callable[..., Any]
    list_namespaced: Callable[..., Any]


def core_resource_kinds(core_api: CoreV1Api) -> dict[str, ResourceKind]:
    return {
        "service": ResourceKind(
            name="service",
            list_all=core_api.list_service_for_all_namespaces,
            list_namespaced=core_api.list_namespaced_service,
        ),
        "pod": ResourceKind(
            name="pod",
            list_all=core_api.list_pod_for_all_namespaces,
            list_namespaced=core_api.list_namespaced_pod,
        ),
        "endpoints": ResourceKind(
            name="endpoints",
            list_all=core_api.list_endpoints_for_all_namespaces,
            list_namespaced=core_api.list_namespaced_endpoints,
        ),
    }


class ResourceWatcher:
    """Feeds a :class:`WorkQueue` with the keys of one resource kind.

    Lists the kind, enqueues every object, then streams watch events from the
    list's ``resourceVersion`` and enqueues the key of each event, including
    deletions.  Every ``resync_seconds`` the kind is re-listed and every live
    key is enqueued again, together with any previously known key that is
    no longer listed, so an event that was missed or observed in the wrong
    order is eventually reconciled anyway.

    ``410 Gone`` triggers a re-list.  Transient errors back off exponentially
    with jitter (capped at 30 s).  ``401`` / ``403`` are configuration errors
    and stop the watcher with a clear log message.
    """

    def __init__(
        self,
        kind: ResourceKind,
        queue: WorkQueue,
        namespace: str = "",
        resync_seconds: int = 300,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.queue = queue
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._next_resync_at: float | None = None
        # Keys believed live; touched only by the watcher thread.
        self._known_keys: set[tuple[str, str]] = set()

    def _list_kwargs(self) -> dict[str, Any]:
        if self.namespace:
            return {"namespace": self.namespace}
        return {}

    def _list_fn(self) -> Callable[..., Any]:
        if self.namespace:
            return self.kind.list_namespaced
        return self.kind.list_all

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def list_and_enqueue(self) -> str | None:
        """List every object of the kind, enqueue all keys, return the list resourceVersion.

        Keys known from earlier lists or watch events but absent from this
        list are enqueued as well: their deletion event was missed, and the
        reconciler only cleans up after reading NotFound.
        """
        listing = self._list_fn()(**self._list_kwargs())
        previous_keys = self._known_keys
        self._known_keys = set()
        for obj in getattr(listing, "items", None) or []:
            self.enqueue_object(obj)
        vanished = previous_keys - self._known_keys
        for key in sorted(vanished):
            self.queue.add(key)
        if vanished:
            self.logger.info(
                "Enqueued %d %s key(s) that disappeared without a delete event",
                len(vanished),
                self.kind.name,
            )
        if self.resync_seconds > 0:
            self._next_resync_at = time.monotonic() + self.resync_seconds
        self.logger.debug("Listed %d %s object(s)", len(self._known_keys), self.kind.name)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    @staticmethod
    def _object_key(obj: Any) -> tuple[str, str] | None:
        metadata = getattr(obj, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            return None
        return namespace, name

    def enqueue_object(self, obj: Any, deleted: bool = False) -> bool:
        key = self._object_key(obj)
        if key is None:
            return False
        self.queue.add(key)
        if deleted:
            self._known_keys.discard(key)
        else:
            self._known_keys.add(key)
        return True

    def _resync_due(self, now_monotonic: float) -> bool:
        return self._next_resync_at is not None and now_monotonic >= self._next_resync_at

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the watch timeout, shortened so the stream ends when a resync is due."""
        if self._next_resync_at is None:
            return self.watch_timeout_seconds
        remaining = max(1.0, self._next_resync_at - now_monotonic)
        return max(1, min(self.watch_timeout_seconds, int(remaining)))

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            self.kind.name,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=self.kind.name).inc()
        self.failed.set()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch the kind until shutdown, with periodic full resyncs."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self.list_and_enqueue()
                self.synced.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.kind.name, resource_version
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial Kubernetes %s list failed", self.kind.name)
                METRICS.watch_errors_total.labels(kind=self.kind.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind.name)
                METRICS.watch_errors_total.labels(kind=self.kind.name).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if self._resync_due(time.monotonic()):
                try:
                    resource_version = self.list_and_enqueue()
                    METRICS.resyncs_total.labels(kind=self.kind.name).inc()
                except ApiException as exc:
                    if self._access_denied(exc, "resync"):
                        return
                    self.logger.exception("Periodic %s resync failed", self.kind.name)
                    METRICS.watch_errors_total.labels(kind=self.kind.name).inc()
                    self._next_resync_at = time.monotonic() + backoff_seconds
                except Exception:
                    self.logger.exception("Unexpected error during %s resync", self.kind.name)
                    METRICS.watch_errors_total.labels(kind=self.kind.name).inc()
                    self._next_resync_at = time.monotonic() + backoff_seconds

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind.name).inc()
                watch_stream_count += 1
                kwargs = self._list_kwargs()
                if resource_version:
                    kwargs["resource_version"] = resource_version
                stream = watcher.stream(
                    self._list_fn(),
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    **kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.enqueue_object(obj, deleted=event.get("type") == "DELETED")

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.kind.name
                    )
                    try:
                        resource_version = self.list_and_enqueue()
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind.name)
                        METRICS.watch_errors_total.labels(kind=self.kind.name).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind.name)
                METRICS.watch_errors_total.labels(kind=self.kind.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind.name)
                METRICS.watch_errors_total.labels(kind=self.kind.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()
