from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from controller.src.bindings import PROJECT_ID_ANNOTATION, annotations_of
from controller.src.kube import is_not_found

LOGGER = logging.getLogger(__name__)


class ProjectNamespaceResolver:
    """Resolve the set of namespaces a service may bind workloads in.

    Namespaces are grouped into projects by the ``field.cattle.io/projectId``
    annotation.  A service sees every namespace of its own namespace's
    project, or only its own namespace when that namespace belongs to no
    project.
    """

    def __init__(self, core_api: CoreV1Api, logger: logging.Logger | None = None) -> None:
        self.core_api = core_api
        self.logger = logger or LOGGER

    def project_id(self, namespace: str) -> str | None:
        try:
            namespace_obj = self.core_api.read_namespace(name=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.warning("Namespace %s not found while resolving its project", namespace)
                return None
            raise
        return annotations_of(namespace_obj).get(PROJECT_ID_ANNOTATION) or None

    def visible_namespaces(self, service: Any) -> set[str]:
        own_namespace = service.metadata.namespace
        project_id = self.project_id(own_namespace)
        if project_id is None:
            return {own_namespace}

        namespaces = self.core_api.list_namespace()
        visible = {own_namespace}
        for namespace_obj in getattr(namespaces, "items", None) or []:
            if annotations_of(namespace_obj).get(PROJECT_ID_ANNOTATION) == project_id:
                visible.add(namespace_obj.metadata.name)
        return visible
