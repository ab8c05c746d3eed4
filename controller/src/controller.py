from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from kubernetes.client import AppsV1Api, CoreV1Api

from controller.src.config import ControllerConfig
from controller.src.endpoint_trigger import EndpointTriggerReconciler
from controller.src.health import WATCHER_FAILED, WATCHER_SYNCED, WATCHER_SYNCING
from controller.src.index import WorkloadIndex
from controller.src.pod_backfill import PodBackfillReconciler
from controller.src.projects import ProjectNamespaceResolver
from controller.src.watcher import ResourceWatcher, core_resource_kinds
from controller.src.workload_service import WorkloadServiceReconciler
from controller.src.workqueue import WorkQueue, run_worker


class WorkloadBindingController:
    """Runs the service, pod and endpoints reconcilers against one cluster.

    One :class:`WorkloadIndex` is shared by the service and pod reconcilers.
    Each resource kind gets its own :class:`WorkQueue`, a
    :class:`ResourceWatcher` feeding it, and a pool of worker threads
    draining it.  Kinds never block each other; within a kind the queue
    guarantees at most one in-flight reconciliation per object.

    The endpoints reconciler signals services by adding their keys straight
    to the service queue.

    ``ready`` is set once every watcher has completed its initial list.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        config: ControllerConfig | None = None,
        index: WorkloadIndex | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or ControllerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.index = index if index is not None else WorkloadIndex()

        self.queues: dict[str, WorkQueue] = {
            kind: WorkQueue(
                kind,
                base_delay_seconds=self.config.retry_base_delay_seconds,
                max_delay_seconds=self.config.retry_max_delay_seconds,
            )
            for kind in ("service", "pod", "endpoints")
        }

        self.service_reconciler = WorkloadServiceReconciler(
            core_api=core_api,
            apps_api=apps_api,
            index=self.index,
            namespace_resolver=ProjectNamespaceResolver(core_api),
        )
        self.pod_reconciler = PodBackfillReconciler(
            core_api=core_api,
            apps_api=apps_api,
            index=self.index,
        )
        self.endpoint_reconciler = EndpointTriggerReconciler(
            core_api=core_api,
            enqueue_service=self.enqueue_service,
        )

        kinds = core_resource_kinds(core_api)
        self.watchers: dict[str, ResourceWatcher] = {
            kind: ResourceWatcher(
                kinds[kind],
                self.queues[kind],
                namespace=self.config.watch_namespace,
                resync_seconds=self.config.resync_period_seconds,
                watch_timeout_seconds=self.config.watch_timeout_seconds,
            )
            for kind in self.queues
        }

        self.ready = threading.Event()
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()

    def enqueue_service(self, namespace: str, name: str) -> None:
        self.queues["service"].add((namespace, name))

    def handlers(self) -> dict[str, Callable[[str, str], object]]:
        return {
            "service": self.service_reconciler.sync,
            "pod": self.pod_reconciler.sync,
            "endpoints": self.endpoint_reconciler.sync,
        }

    def worker_counts(self) -> dict[str, int]:
        return {
            "service": self.config.service_workers,
            "pod": self.config.pod_workers,
            "endpoints": self.config.endpoint_workers,
        }

    def start(self) -> None:
        """Start every watcher and worker thread without blocking."""
        self._stop.clear()
        handlers = self.handlers()
        for kind, count in self.worker_counts().items():
            for number in range(count):
                self._spawn(
                    f"{kind}-worker-{number}",
                    run_worker,
                    self.queues[kind],
                    handlers[kind],
                    self._stop,
                )
        for kind, watcher in self.watchers.items():
            self._spawn(f"{kind}-watcher", watcher.run_forever, self._stop)

    def _spawn(self, name: str, target: Callable[..., None], *args: object) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _update_ready(self) -> None:
        if all(watcher.synced.is_set() for watcher in self.watchers.values()):
            if not self.ready.is_set():
                self.logger.info("All watchers synced; controller is ready")
            self.ready.set()
        else:
            self.ready.clear()

    def watcher_states(self) -> dict[str, str]:
        """Return each watched kind mapped to ``syncing``, ``synced`` or ``failed``."""
        states = {}
        for kind, watcher in self.watchers.items():
            if watcher.failed.is_set():
                states[kind] = WATCHER_FAILED
            elif watcher.synced.is_set():
                states[kind] = WATCHER_SYNCED
            else:
                states[kind] = WATCHER_SYNCING
        return states

    def _watcher_failed(self) -> bool:
        return any(watcher.failed.is_set() for watcher in self.watchers.values())

    def request_stop(self) -> None:
        """Stop watchers, shut down queues and let workers drain out."""
        self._stop.set()
        for watcher in self.watchers.values():
            watcher.request_stop()
        for queue in self.queues.values():
            queue.shut_down()

    def run_forever(
        self, shutdown_event: threading.Event | None = None, poll_seconds: float = 1.0
    ) -> None:
        """Run until *shutdown_event* is set or a watcher fails on access denial."""
        stop = shutdown_event or threading.Event()
        self.start()
        try:
            while not stop.wait(timeout=poll_seconds):
                self._update_ready()
                if self._watcher_failed():
                    self.logger.error("A resource watcher stopped permanently; shutting down")
                    break
        finally:
            self.request_stop()
            for thread in self._threads:
                thread.join(timeout=5)
                if thread.is_alive():
                    self.logger.warning("Thread %s did not stop within 5s", thread.name)
            self._threads.clear()
            self.ready.clear()
            self.logger.info("Controller stopped")


def build_controller_from_config(
    config: ControllerConfig, core_api: CoreV1Api, apps_api: AppsV1Api
) -> WorkloadBindingController:
    return WorkloadBindingController(core_api=core_api, apps_api=apps_api, config=config)
