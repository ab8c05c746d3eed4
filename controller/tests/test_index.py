from __future__ import annotations

import threading

from controller.src.index import WorkloadIndex


def test_put_replaces_previous_targets() -> None:
    index = WorkloadIndex()
    index.put("ns1:svc-a", {"ns1:dep1", "ns1:dep2"})
    index.put("ns1:svc-a", {"ns1:dep3"})

    assert index.get("ns1:svc-a") == frozenset({"ns1:dep3"})
    assert index.find_services_targeting("ns1:dep1") == frozenset()
    assert index.find_services_targeting("ns1:dep3") == frozenset({"ns1:svc-a"})


def test_find_services_targeting_returns_every_service() -> None:
    index = WorkloadIndex()
    index.put("ns1:svc-a", {"ns1:dep1"})
    index.put("ns1:svc-b", {"ns1:dep1", "ns2:dep2"})

    assert index.find_services_targeting("ns1:dep1") == frozenset({"ns1:svc-a", "ns1:svc-b"})
    assert index.find_services_targeting("ns2:dep2") == frozenset({"ns1:svc-b"})
    assert index.find_services_targeting("ns9:missing") == frozenset()


def test_delete_removes_forward_and_reverse_entries() -> None:
    index = WorkloadIndex()
    index.put("ns1:svc-a", {"ns1:dep1"})
    index.put("ns1:svc-b", {"ns1:dep1"})

    assert index.delete("ns1:svc-a") is True
    assert "ns1:svc-a" not in index
    assert index.find_services_targeting("ns1:dep1") == frozenset({"ns1:svc-b"})
    assert index.delete("ns1:svc-a") is False
    assert len(index) == 1


def test_put_with_empty_set_keeps_entry() -> None:
    index = WorkloadIndex()
    index.put("ns1:svc-a", set())

    assert "ns1:svc-a" in index
    assert index.get("ns1:svc-a") == frozenset()


def test_returned_sets_are_snapshots() -> None:
    index = WorkloadIndex()
    index.put("ns1:svc-a", {"ns1:dep1"})
    snapshot = index.find_services_targeting("ns1:dep1")

    index.delete("ns1:svc-a")

    assert snapshot == frozenset({"ns1:svc-a"})


def test_concurrent_puts_and_lookups_stay_consistent() -> None:
    index = WorkloadIndex()
    errors: list[str] = []

    def writer(service_number: int) -> None:
        key = f"ns1:svc-{service_number}"
        for round_number in range(200):
            index.put(key, {f"ns1:dep-{round_number % 3}"})
        index.put(key, {"ns1:dep-final"})

    def reader() -> None:
        for round_number in range(500):
            for service_key in index.find_services_targeting(f"ns1:dep-{round_number % 3}"):
                if not service_key.startswith("ns1:svc-"):
                    errors.append(service_key)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    threads.append(threading.Thread(target=reader))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert index.find_services_targeting("ns1:dep-final") == frozenset(
        {f"ns1:svc-{n}" for n in range(4)}
    )
    for n in range(3):
        assert index.find_services_targeting(f"ns1:dep-{n}") == frozenset()
