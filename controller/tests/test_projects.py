from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from controller.src.projects import ProjectNamespaceResolver
from controller.tests.fakes import FakeCoreApi, make_namespace, make_service


def test_namespace_without_project_sees_only_itself() -> None:
    core_api = FakeCoreApi()
    core_api.add_namespace(make_namespace("ns1"), make_namespace("ns2"))
    resolver = ProjectNamespaceResolver(core_api)  # type: ignore[arg-type]

    assert resolver.visible_namespaces(make_service("svc", "ns1")) == {"ns1"}


def test_project_members_are_visible() -> None:
    core_api = FakeCoreApi()
    core_api.add_namespace(
        make_namespace("ns1", project_id="c-1:p-1"),
        make_namespace("ns2", project_id="c-1:p-1"),
        make_namespace("ns3", project_id="c-1:p-2"),
        make_namespace("ns4"),
    )
    resolver = ProjectNamespaceResolver(core_api)  # type: ignore[arg-type]

    assert resolver.visible_namespaces(make_service("svc", "ns1")) == {"ns1", "ns2"}


def test_missing_namespace_falls_back_to_own_namespace() -> None:
    resolver = ProjectNamespaceResolver(FakeCoreApi())  # type: ignore[arg-type]

    assert resolver.project_id("ghost") is None
    assert resolver.visible_namespaces(make_service("svc", "ghost")) == {"ghost"}


def test_namespace_read_errors_propagate() -> None:
    class FailingCoreApi(FakeCoreApi):
        def read_namespace(self, name: str):
            raise ApiException(status=500, reason="boom")

    resolver = ProjectNamespaceResolver(FailingCoreApi())  # type: ignore[arg-type]

    with pytest.raises(ApiException):
        resolver.visible_namespaces(make_service("svc", "ns1"))
