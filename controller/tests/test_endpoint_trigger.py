from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from controller.src.bindings import (
    DNS_ENDPOINT_ANNOTATION,
    DNS_RECORD_ANNOTATION,
    AnnotationFormatError,
)
from controller.src.endpoint_trigger import EndpointTriggerReconciler
from controller.tests.fakes import FakeCoreApi, make_endpoints, make_service


class RecordingQueue:
    def __init__(self) -> None:
        self.enqueued: list[tuple[str, str]] = []

    def __call__(self, namespace: str, name: str) -> None:
        self.enqueued.append((namespace, name))


def _make_reconciler(core_api: FakeCoreApi) -> tuple[EndpointTriggerReconciler, RecordingQueue]:
    queue = RecordingQueue()
    reconciler = EndpointTriggerReconciler(core_api=core_api, enqueue_service=queue)  # type: ignore[arg-type]
    return reconciler, queue


@pytest.fixture
def core_api() -> FakeCoreApi:
    api = FakeCoreApi()
    api.add_service(
        make_service("dns-a", "ns1", annotations={DNS_RECORD_ANNOTATION: "ns1:ep1, ns2:ep9"}),
        make_service("dns-b", "ns1", annotations={DNS_RECORD_ANNOTATION: "ns1:ep2"}),
        make_service("plain", "ns1"),
        make_service("dns-c", "ns1", annotations={DNS_RECORD_ANNOTATION: "ns1:ep1"}),
    )
    return api


def test_create_scans_forward_annotations(core_api: FakeCoreApi) -> None:
    core_api.add_endpoints(make_endpoints("ep1", "ns1"))
    reconciler, queue = _make_reconciler(core_api)

    triggered = reconciler.sync("ns1", "ep1")

    assert triggered == ["ns1:dns-a", "ns1:dns-c"]
    assert queue.enqueued == [("ns1", "dns-a"), ("ns1", "dns-c")]


def test_update_uses_reverse_annotation(core_api: FakeCoreApi) -> None:
    core_api.add_endpoints(make_endpoints("ep1", "ns1"))
    reconciler, queue = _make_reconciler(core_api)
    reconciler.sync("ns1", "ep1")
    queue.enqueued.clear()

    core_api.endpoints[("ns1", "ep1")].metadata.annotations = {
        DNS_ENDPOINT_ANNOTATION: "ns1:dns-b"
    }
    triggered = reconciler.sync("ns1", "ep1")

    assert triggered == ["ns1:dns-b"]
    assert queue.enqueued == [("ns1", "dns-b")]


def test_update_without_reverse_annotation_triggers_nothing(core_api: FakeCoreApi) -> None:
    core_api.add_endpoints(make_endpoints("ep1", "ns1"))
    reconciler, queue = _make_reconciler(core_api)
    reconciler.sync("ns1", "ep1")
    queue.enqueued.clear()

    assert reconciler.sync("ns1", "ep1") == []
    assert queue.enqueued == []


def test_delete_uses_last_seen_reverse_annotation(core_api: FakeCoreApi) -> None:
    core_api.add_endpoints(
        make_endpoints("ep1", "ns1", annotations={DNS_ENDPOINT_ANNOTATION: "ns1:dns-b"})
    )
    reconciler, queue = _make_reconciler(core_api)
    reconciler.sync("ns1", "ep1")
    queue.enqueued.clear()

    del core_api.endpoints[("ns1", "ep1")]
    assert reconciler.sync("ns1", "ep1") == ["ns1:dns-b"]
    assert queue.enqueued == [("ns1", "dns-b")]

    # The key is forgotten once the delete has been handled.
    assert reconciler.sync("ns1", "ep1") == []


def test_malformed_reverse_annotation_on_delete_is_forgotten(core_api: FakeCoreApi) -> None:
    core_api.add_endpoints(
        make_endpoints("ep1", "ns1", annotations={DNS_ENDPOINT_ANNOTATION: "ns1:dns-b,"})
    )
    reconciler, queue = _make_reconciler(core_api)
    reconciler.sync("ns1", "ep1")
    queue.enqueued.clear()

    del core_api.endpoints[("ns1", "ep1")]
    with pytest.raises(AnnotationFormatError):
        reconciler.sync("ns1", "ep1")

    assert reconciler.sync("ns1", "ep1") == []
    assert queue.enqueued == []


def test_recreated_endpoint_before_processing_is_treated_as_update(
    core_api: FakeCoreApi,
) -> None:
    core_api.add_endpoints(make_endpoints("ep1", "ns1"))
    reconciler, queue = _make_reconciler(core_api)
    reconciler.sync("ns1", "ep1")
    queue.enqueued.clear()

    del core_api.endpoints[("ns1", "ep1")]
    core_api.add_endpoints(make_endpoints("ep1", "ns1"))

    # No reverse annotation and no forward scan: nothing is triggered.
    assert reconciler.sync("ns1", "ep1") == []
    assert queue.enqueued == []


def test_unknown_deleted_endpoint_is_ignored(core_api: FakeCoreApi) -> None:
    reconciler, queue = _make_reconciler(core_api)

    assert reconciler.sync("ns1", "never-seen") == []
    assert queue.enqueued == []


def test_missing_service_stops_trigger(core_api: FakeCoreApi) -> None:
    core_api.add_endpoints(make_endpoints("ep1", "ns1"))
    reconciler, queue = _make_reconciler(core_api)
    reconciler.sync("ns1", "ep1")
    queue.enqueued.clear()

    core_api.endpoints[("ns1", "ep1")].metadata.annotations = {
        DNS_ENDPOINT_ANNOTATION: "ns1:gone,ns1:dns-b"
    }

    assert reconciler.sync("ns1", "ep1") == []
    assert queue.enqueued == []


def test_service_read_errors_propagate() -> None:
    class FailingCoreApi(FakeCoreApi):
        def read_namespaced_service(self, name: str, namespace: str):
            raise ApiException(status=500, reason="boom")

    core_api = FailingCoreApi()
    core_api.add_service(
        make_service("dns-a", "ns1", annotations={DNS_RECORD_ANNOTATION: "ns1:ep1"})
    )
    core_api.add_endpoints(make_endpoints("ep1", "ns1"))
    reconciler, _ = _make_reconciler(core_api)

    with pytest.raises(ApiException):
        reconciler.sync("ns1", "ep1")
