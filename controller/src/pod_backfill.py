from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from controller.src.bindings import (
    binding_key,
    deployment_match_labels,
    format_selector,
    is_terminating,
    labels_of,
    selector_matches,
    split_binding_key,
)
from controller.src.index import WorkloadIndex
from controller.src.kube import is_not_found, replace_pod_labels
from controller.src.metrics import METRICS


class PodBackfillReconciler:
    """Labels pods that appear after their service binding was registered.

    The workload service reconciler only labels the pods that exist while it
    runs.  This reconciler closes the gap from the pod side: it finds the
    deployments selecting the pod, asks the :class:`WorkloadIndex` which
    services target those deployments, and merges those services' selectors
    into the pod's labels with a single write.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        index: WorkloadIndex,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.index = index
        self.logger = logger or logging.getLogger(__name__)

    def sync(self, namespace: str, name: str) -> dict[str, str]:
        try:
            pod = self.core_api.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            self.logger.debug("Pod %s/%s is gone; nothing to backfill", namespace, name)
            return {}
        return self.reconcile(pod)

    def reconcile(self, pod: Any) -> dict[str, str]:
        """Backfill missing service selector labels onto *pod*; return the labels added."""
        if is_terminating(pod):
            return {}

        namespace = pod.metadata.namespace
        pod_labels = labels_of(pod)
        service_keys: set[str] = set()
        for deployment_key in self._matching_deployments(namespace, pod_labels):
            service_keys.update(self.index.find_services_targeting(deployment_key))

        labels_to_add: dict[str, str] = {}
        for service_key in sorted(service_keys):
            selector = self._service_selector(service_key)
            if selector is None:
                continue
            for key, value in selector.items():
                if pod_labels.get(key) == value:
                    continue
                labels_to_add[key] = value

        if not labels_to_add:
            return {}

        replace_pod_labels(self.core_api, pod, labels_to_add)
        METRICS.pod_label_updates_total.labels(source="backfill").inc()
        self.logger.info(
            "Backfilled pod %s/%s with %s",
            namespace,
            pod.metadata.name,
            format_selector(labels_to_add),
        )
        return labels_to_add

    def _matching_deployments(self, namespace: str, pod_labels: dict[str, str]) -> list[str]:
        deployments = self.apps_api.list_namespaced_deployment(namespace=namespace)
        keys: list[str] = []
        for deployment in getattr(deployments, "items", None) or []:
            match_labels = deployment_match_labels(deployment)
            if match_labels and selector_matches(match_labels, pod_labels):
                keys.append(binding_key(deployment.metadata.namespace, deployment.metadata.name))
        return keys

    def _service_selector(self, service_key: str) -> dict[str, str] | None:
        """Return the live selector of an indexed service, or None for a stale key."""
        namespace, name = split_binding_key(service_key)
        try:
            service = self.core_api.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            self.logger.info("Skipping stale workload binding for deleted service %s", service_key)
            METRICS.skipped_references_total.labels(reason="service").inc()
            return None
        return dict(getattr(service.spec, "selector", None) or {})
