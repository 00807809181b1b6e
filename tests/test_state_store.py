import threading

import pytest

from cluster_orchestrator.core.types import OperationKind, ResourceAddress, StateRecord
from cluster_orchestrator.state.file_store import FileStateStore
from cluster_orchestrator.state.store import InMemoryStateStore

CLUSTER = ResourceAddress("kubernetes_cluster", "main", "ams3")
POOL = ResourceAddress("kubernetes_node_pool", "workers", "ams3")


def make_record(
    address: ResourceAddress,
    resource_id: str = "kubernetes_cluster-1",
    **inputs,
) -> StateRecord:
    inputs = inputs or {"name": "k8s-ams3", "region": "ams3"}
    attributes = dict(inputs)
    attributes["id"] = resource_id
    return StateRecord(
        address=address, resource_id=resource_id, inputs=inputs, attributes=attributes
    )


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStateStore()
    return FileStateStore(root=tmp_path / "state")


def test_commit_and_get(store):
    stored = store.commit(make_record(CLUSTER))

    assert stored.serial == 1
    assert store.get(CLUSTER) == stored
    assert store.get(POOL) is None


def test_serial_increases_per_address(store):
    store.commit(make_record(CLUSTER))
    second = store.commit(make_record(CLUSTER, version="1.30"))

    assert second.serial == 2
    assert store.get(CLUSTER).inputs == {"version": "1.30"}


def test_begin_journals_until_commit(store):
    store.begin(CLUSTER, OperationKind.create)

    pending = store.pending()
    assert [p.address for p in pending] == [CLUSTER]
    assert pending[0].action == OperationKind.create

    store.commit(make_record(CLUSTER))
    assert store.pending() == []


def test_remove_checks_expected_id(store):
    store.commit(make_record(CLUSTER, resource_id="kubernetes_cluster-2"))
    store.begin(CLUSTER, OperationKind.delete)

    store.remove(CLUSTER, expected_id="kubernetes_cluster-1")

    # A newer record written by a create before destroy replacement survives.
    assert store.get(CLUSTER).resource_id == "kubernetes_cluster-2"
    assert store.pending() == []

    store.remove(CLUSTER, expected_id="kubernetes_cluster-2")
    assert store.get(CLUSTER) is None


def test_snapshot_is_sorted_and_isolated(store):
    store.commit(make_record(POOL, resource_id="kubernetes_node_pool-2", name="workers"))
    store.commit(make_record(CLUSTER))

    snap = store.snapshot()
    assert list(snap) == [CLUSTER, POOL]

    snap[CLUSTER].inputs["name"] = "mutated"
    assert store.get(CLUSTER).inputs["name"] == "k8s-ams3"


def test_clear_pending_keeps_record(store):
    store.commit(make_record(CLUSTER))
    store.begin(CLUSTER, OperationKind.update)

    store.clear_pending(CLUSTER)

    assert store.pending() == []
    assert store.get(CLUSTER) is not None


def test_concurrent_commits_to_different_addresses(store):
    addresses = [ResourceAddress("project_resources", f"p{i}") for i in range(16)]

    def write(addr: ResourceAddress) -> None:
        for _ in range(5):
            store.commit(make_record(addr, resource_id=f"id-{addr.name}", project="x"))

    threads = [threading.Thread(target=write, args=(a,)) for a in addresses]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.all()) == 16
    assert {r.serial for r in store.all()} == {5}


def test_file_store_survives_reload(tmp_path):
    first = FileStateStore(root=tmp_path / "state")
    first.commit(make_record(CLUSTER))
    first.begin(POOL, OperationKind.create)

    second = FileStateStore(root=tmp_path / "state")

    assert second.get(CLUSTER).attributes["id"] == "kubernetes_cluster-1"
    assert [p.address for p in second.pending()] == [POOL]


def test_file_store_ignores_leftover_temporary_files(tmp_path):
    store = FileStateStore(root=tmp_path / "state")
    store.commit(make_record(CLUSTER))
    (store.records_dir / ".tmp-abandoned.json").write_text("{", encoding="utf-8")

    assert [r.address for r in store.all()] == [CLUSTER]


def test_file_store_uses_one_document_per_address(tmp_path):
    store = FileStateStore(root=tmp_path / "state")
    store.commit(make_record(CLUSTER))
    store.commit(make_record(POOL, resource_id="kubernetes_node_pool-2", name="workers"))

    names = sorted(p.name for p in store.records_dir.iterdir())
    assert len(names) == 2
    assert all(n.endswith(".json") and not n.startswith(".tmp-") for n in names)


@pytest.mark.parametrize("key", ["zürich", 'edge"1', "edge\\2", "a]b"])
def test_address_text_round_trips(key):
    address = ResourceAddress("kubernetes_cluster", "main", key)

    assert ResourceAddress.parse(str(address)) == address


def test_file_store_reload_keeps_special_keys(tmp_path):
    addresses = [
        ResourceAddress("kubernetes_cluster", "main", key)
        for key in ("zürich", 'edge"1', "edge\\2")
    ]
    first = FileStateStore(root=tmp_path / "state")
    for address in addresses:
        first.commit(make_record(address))

    second = FileStateStore(root=tmp_path / "state")

    assert sorted(r.address for r in second.all()) == sorted(addresses)
    assert all(second.get(a) is not None for a in addresses)
