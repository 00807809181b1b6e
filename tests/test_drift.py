from cluster_orchestrator.core.errors import DriftError
from cluster_orchestrator.core.types import OperationKind, ResourceAddress, StateRecord
from cluster_orchestrator.execution.base import ProviderRegistry
from cluster_orchestrator.execution.mock import InMemoryProvider
from cluster_orchestrator.planner.drift import refresh_state
from cluster_orchestrator.state.store import InMemoryStateStore

CLUSTER = ResourceAddress("kubernetes_cluster", "main")


def make_world() -> tuple[InMemoryProvider, InMemoryStateStore, StateRecord]:
    """Create one cluster at the provider and record it the way apply would."""
    provider = InMemoryProvider()
    store = InMemoryStateStore()
    inputs = {"name": "k8s", "region": "ams3", "version": "1.29"}
    res = provider.create(CLUSTER, inputs)
    attributes = dict(res.attributes)
    attributes["id"] = res.resource_id
    rec = store.commit(
        StateRecord(
            address=CLUSTER, resource_id=res.resource_id, inputs=inputs, attributes=attributes
        )
    )
    return provider, store, rec


def refresh(provider: InMemoryProvider, store: InMemoryStateStore):
    return refresh_state(store.snapshot(), store.pending(), ProviderRegistry(default=provider))


def test_matching_state_reports_no_drift():
    provider, store, rec = make_world()

    result = refresh(provider, store)

    assert result.drift == []
    assert result.snapshot == {CLUSTER: rec}
    assert result.recovered == {}


def test_changed_input_is_reported_and_refreshed():
    provider, store, rec = make_world()
    provider.set_attribute(rec.resource_id, "version", "1.28")

    result = refresh(provider, store)

    assert len(result.drift) == 1
    drift = result.drift[0]
    assert isinstance(drift, DriftError)
    assert drift.address == str(CLUSTER)
    assert "version" in drift.message
    assert drift.live["version"] == "1.28"
    assert result.snapshot[CLUSTER].inputs["version"] == "1.28"
    assert result.drifted == []


def test_changed_computed_attribute_marks_address_drifted():
    provider, store, rec = make_world()
    provider.set_attribute(rec.resource_id, "status", "degraded")

    result = refresh(provider, store)

    assert result.drifted == [CLUSTER]
    assert result.snapshot[CLUSTER].attributes["status"] == "degraded"


def test_deleted_resource_drops_out_of_snapshot():
    provider, store, rec = make_world()
    del provider.resources[rec.resource_id]

    result = refresh(provider, store)

    assert CLUSTER not in result.snapshot
    assert "no longer exists" in result.drift[0].message


def test_refresh_never_writes():
    provider, store, rec = make_world()
    provider.set_attribute(rec.resource_id, "version", "1.28")

    refresh(provider, store)

    assert store.get(CLUSTER).inputs["version"] == "1.29"
    assert store.get(CLUSTER).serial == 1


def test_interrupted_create_with_live_resource_is_recovered():
    provider = InMemoryProvider()
    store = InMemoryStateStore()
    store.begin(CLUSTER, OperationKind.create)
    res = provider.create(CLUSTER, {"name": "k8s", "region": "ams3"})

    result = refresh(provider, store)

    recovered = result.recovered[CLUSTER]
    assert recovered is not None
    assert recovered.resource_id == res.resource_id
    assert recovered.inputs == {"name": "k8s", "region": "ams3"}
    assert recovered.attributes["endpoint"] == res.attributes["endpoint"]
    assert result.snapshot[CLUSTER] == recovered
    assert "interrupted create" in result.drift[0].message


def test_interrupted_create_without_resource_is_cleared():
    provider = InMemoryProvider()
    store = InMemoryStateStore()
    store.begin(CLUSTER, OperationKind.create)

    result = refresh(provider, store)

    assert result.recovered == {CLUSTER: None}
    assert CLUSTER not in result.snapshot
    assert "left nothing" in result.drift[0].message


def test_interrupted_delete_that_completed():
    provider, store, rec = make_world()
    store.begin(CLUSTER, OperationKind.delete)
    provider.delete(CLUSTER, rec)

    result = refresh(provider, store)

    assert result.recovered == {CLUSTER: None}
    assert "interrupted delete completed" in result.drift[0].message
