from __future__ import annotations

import copy
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def replace_pod_labels(core_api: CoreV1Api, pod: Any, labels_to_add: dict[str, str]) -> Any:
    """Write *pod* back with *labels_to_add* merged into its labels.

    Uses a full ``replace`` of a copy of the observed object so the API server
    rejects the write with ``409 Conflict`` when the pod changed since it was
    read; the caller's work queue retries with a fresh read.
    """
    to_update = copy.deepcopy(pod)
    if to_update.metadata.labels is None:
        to_update.metadata.labels = {}
    to_update.metadata.labels.update(labels_to_add)
    return core_api.replace_namespaced_pod(
        name=to_update.metadata.name,
        namespace=to_update.metadata.namespace,
        body=to_update,
    )


def replace_service(core_api: CoreV1Api, service: Any) -> Any:
    """Persist a mutated service object, relying on its resourceVersion for concurrency."""
    return core_api.replace_namespaced_service(
        name=service.metadata.name,
        namespace=service.metadata.namespace,
        body=service,
    )
