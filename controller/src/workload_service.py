from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from controller.src.bindings import (
    SYNTHETIC_LABEL_VALUE,
    TARGET_WORKLOAD_ANNOTATION,
    annotations_of,
    binding_key,
    deployment_match_labels,
    format_selector,
    is_terminating,
    labels_of,
    parse_binding_tokens,
    synthetic_label_key,
)
from controller.src.index import WorkloadIndex
from controller.src.kube import is_not_found, replace_pod_labels, replace_service
from controller.src.metrics import METRICS
from controller.src.projects import ProjectNamespaceResolver


@dataclass(frozen=True)
class ServiceReconcileResult:
    """Outcome of one workload service reconciliation.

    ``selector_updated`` tells the caller that the service object was mutated
    in place and must be written back.
    """

    service_key: str
    selector_updated: bool
    targeted_deployments: frozenset[str]
    pods_updated: int
    skipped_tokens: int


class WorkloadServiceReconciler:
    """Binds services to the deployments named in their target-workload annotation.

    For an annotated service the reconciler:

    1. Parses every ``namespace:deployment`` token up front, so a malformed
       token fails the reconciliation before anything is written.
    2. Adds the synthetic ``workloadID_<service>`` label to the service
       selector.
    3. Resolves each target deployment, labels its live pods with the full
       service selector, and collects the deployment keys.
    4. Replaces the service's entry in the shared :class:`WorkloadIndex`.

    Unresolvable tokens (namespace outside the project, missing or deleting
    deployment) are logged and skipped.  Store failures propagate so the
    work queue can retry the service.  Labels are never removed from pods.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        index: WorkloadIndex,
        namespace_resolver: ProjectNamespaceResolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.index = index
        self.namespace_resolver = namespace_resolver or ProjectNamespaceResolver(core_api)
        self.logger = logger or logging.getLogger(__name__)

    def sync(self, namespace: str, name: str) -> ServiceReconcileResult | None:
        """Reconcile the current state of one service, reading it fresh from the API."""
        try:
            service = self.core_api.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            self.logger.info("Service %s/%s is gone; removing workload binding", namespace, name)
            self.remove(namespace, name)
            return None

        if is_terminating(service):
            self.remove(namespace, name)
            return None

        result = self.reconcile(service)
        if result is not None and result.selector_updated:
            replace_service(self.core_api, service)
            METRICS.service_selector_updates_total.inc()
            self.logger.info(
                "Added selector %s to service %s/%s",
                synthetic_label_key(name),
                namespace,
                name,
            )
        return result

    def remove(self, namespace: str, name: str) -> None:
        """Drop the index entry of a deleted service; pod labels stay in place."""
        if self.index.delete(binding_key(namespace, name)):
            METRICS.indexed_services.set(len(self.index))

    def reconcile(self, service: Any) -> ServiceReconcileResult | None:
        metadata = service.metadata
        service_key = binding_key(metadata.namespace, metadata.name)
        value = annotations_of(service).get(TARGET_WORKLOAD_ANNOTATION)
        if value is None:
            # Entry exists only while the annotation does.
            self.remove(metadata.namespace, metadata.name)
            return None

        tokens = parse_binding_tokens(value)

        if service.spec.selector is None:
            service.spec.selector = {}
        selector: dict[str, str] = service.spec.selector
        label_key = synthetic_label_key(metadata.name)
        selector_updated = False
        if label_key not in selector:
            selector[label_key] = SYNTHETIC_LABEL_VALUE
            selector_updated = True

        visible_namespaces = self.namespace_resolver.visible_namespaces(service)
        targeted: set[str] = set()
        pods_updated = 0
        skipped = 0
        for namespace, deployment_name in tokens:
            token = binding_key(namespace, deployment_name)
            if namespace not in visible_namespaces:
                self.logger.warning(
                    "Failed to find namespace [%s] for workloadID [%s] of service %s",
                    namespace,
                    token,
                    service_key,
                )
                METRICS.skipped_references_total.labels(reason="namespace").inc()
                skipped += 1
                continue

            deployment = self._get_deployment(namespace, deployment_name)
            if deployment is None:
                METRICS.skipped_references_total.labels(reason="deployment").inc()
                skipped += 1
                continue

            targeted.add(token)
            pods_updated += self._label_deployment_pods(token, deployment, selector)

        self.index.put(service_key, targeted)
        METRICS.indexed_services.set(len(self.index))

        return ServiceReconcileResult(
            service_key=service_key,
            selector_updated=selector_updated,
            targeted_deployments=frozenset(targeted),
            pods_updated=pods_updated,
            skipped_tokens=skipped,
        )

    def _get_deployment(self, namespace: str, name: str) -> Any | None:
        """Return the live deployment, or None when it is missing or being removed."""
        try:
            deployment = self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            self.logger.warning("Failed to fetch workload [%s:%s]: not found", namespace, name)
            return None
        if is_terminating(deployment):
            self.logger.warning(
                "Failed to fetch workload [%s:%s]: workload is being removed", namespace, name
            )
            return None
        return deployment

    def _label_deployment_pods(
        self, token: str, deployment: Any, selector: dict[str, str]
    ) -> int:
        """Add the service selector to every live pod of *deployment*; return pods written."""
        match_labels = deployment_match_labels(deployment)
        if not match_labels:
            self.logger.warning("Workload [%s] has no matchLabels selector; skipping pods", token)
            return 0

        pods = self.core_api.list_namespaced_pod(
            namespace=deployment.metadata.namespace,
            label_selector=format_selector(match_labels),
        )
        updated = 0
        for pod in getattr(pods, "items", None) or []:
            if is_terminating(pod):
                continue
            current = labels_of(pod)
            missing = {k: v for k, v in selector.items() if current.get(k) != v}
            if not missing:
                continue
            replace_pod_labels(self.core_api, pod, missing)
            updated += 1
            METRICS.pod_label_updates_total.labels(source="service").inc()
            self.logger.info(
                "Labeled pod %s/%s for workload [%s] with %s",
                pod.metadata.namespace,
                pod.metadata.name,
                token,
                format_selector(missing),
            )
        return updated
