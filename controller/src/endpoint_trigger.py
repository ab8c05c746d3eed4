from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from controller.src.bindings import (
    DNS_ENDPOINT_ANNOTATION,
    DNS_RECORD_ANNOTATION,
    AnnotationFormatError,
    annotations_of,
    binding_key,
    parse_binding_tokens,
)
from controller.src.kube import is_not_found
from controller.src.metrics import METRICS


class EndpointTriggerReconciler:
    """Re-enqueues DNS-record services when an endpoints object they depend on changes.

    The reconciler only signals: it calls ``enqueue_service(namespace, name)``
    and never writes to the API.

    Work queue keys carry no event type, so the reconciler classifies each
    wake-up itself from what it has observed:

        create
            the endpoints object exists and its key was never seen.  Services
            in the same namespace are scanned for a forward DNS annotation
            naming this endpoints object.
        update
            the object exists and was seen before.  Its own reverse
            annotation lists the services to notify.
        delete
            the object no longer exists.  The last reverse annotation observed
            for it is used, then the key is forgotten.

    Only the latest state is read, so an endpoints object deleted and
    recreated under the same name before its key is processed looks like an
    update: the forward scan is skipped and its reverse annotation is used.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        enqueue_service: Callable[[str, str], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.enqueue_service = enqueue_service
        self.logger = logger or logging.getLogger(__name__)
        self._reverse_annotations: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def sync(self, namespace: str, name: str) -> list[str]:
        key = binding_key(namespace, name)
        try:
            endpoints = self.core_api.read_namespaced_endpoints(name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            with self._lock:
                seen = key in self._reverse_annotations
                last_reverse = self._reverse_annotations.get(key)
            if not seen:
                return []
            try:
                service_refs = parse_binding_tokens(last_reverse)
            except AnnotationFormatError:
                # Nothing left to re-read; a retry would fail the same way.
                with self._lock:
                    self._reverse_annotations.pop(key, None)
                raise
            triggered = self.trigger(service_refs)
            with self._lock:
                self._reverse_annotations.pop(key, None)
            return triggered

        reverse = annotations_of(endpoints).get(DNS_ENDPOINT_ANNOTATION)
        with self._lock:
            created = key not in self._reverse_annotations
        if created:
            service_refs = self.services_for_created(endpoints)
        else:
            service_refs = parse_binding_tokens(reverse)
        triggered = self.trigger(service_refs)
        with self._lock:
            self._reverse_annotations[key] = reverse
        return triggered

    def services_for_created(self, endpoints: Any) -> list[tuple[str, str]]:
        """Scan services in the endpoints' namespace whose forward DNS annotation names it."""
        namespace = endpoints.metadata.namespace
        endpoint_key = binding_key(namespace, endpoints.metadata.name)
        services = self.core_api.list_namespaced_service(namespace=namespace)
        refs: list[tuple[str, str]] = []
        for service in getattr(services, "items", None) or []:
            value = annotations_of(service).get(DNS_RECORD_ANNOTATION)
            if value is None:
                continue
            records = [record.strip() for record in value.split(",")]
            if endpoint_key in records:
                refs.append((service.metadata.namespace, service.metadata.name))
        return refs

    def trigger(self, service_refs: list[tuple[str, str]]) -> list[str]:
        """Enqueue each referenced service that still exists; return the keys enqueued.

        A missing service ends the trigger with a log line: the DNS record
        owning the reference has most likely been deleted.
        """
        triggered: list[str] = []
        for namespace, name in service_refs:
            try:
                self.core_api.read_namespaced_service(name=name, namespace=namespace)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise
                self.logger.info("DNSRecord service [%s] is not found in namespace [%s]", name, namespace)
                METRICS.skipped_references_total.labels(reason="service").inc()
                break
            self.logger.info(
                "Trigger endpoints update for service [%s] in namespace [%s]", name, namespace
            )
            self.enqueue_service(namespace, name)
            METRICS.endpoint_triggers_total.inc()
            triggered.append(binding_key(namespace, name))
        return triggered
