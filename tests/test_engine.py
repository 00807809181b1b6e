import threading

import pytest

from cluster_orchestrator.agent.engine import OrchestrationEngine
from cluster_orchestrator.agent.execution_mode import ExecutionMode
from cluster_orchestrator.core.errors import (
    CyclicDependencyError,
    ExecutionFailed,
    PlanConflictError,
    PolicyRejected,
    UnresolvedReferenceError,
)
from cluster_orchestrator.core.types import (
    Lifecycle,
    OperationKind,
    ResourceAddress,
    ResourceDeclaration,
)
from cluster_orchestrator.declarations.base import DeclarationDocument
from cluster_orchestrator.execution.base import ExecutorConfig, ProviderRegistry
from cluster_orchestrator.execution.mock import InMemoryProvider
from cluster_orchestrator.state.file_store import FileStateStore
from cluster_orchestrator.state.store import InMemoryStateStore

CLUSTER_AMS = ResourceAddress("kubernetes_cluster", "main", "ams3")
POOL_AMS = ResourceAddress("kubernetes_node_pool", "workers", "ams3")


def make_document(regions=("ams3", "nyc1"), **variables) -> DeclarationDocument:
    values = {"regions": list(regions), "version": "1.29", "nodes": 2}
    values.update(variables)
    return DeclarationDocument(
        variables=values,
        declarations=[
            ResourceDeclaration(
                type="kubernetes_cluster",
                name="main",
                for_each="${var.regions}",
                attributes={"name": "k8s-${each.key}", "region": "${each.value}", "version": "${var.version}"},
            ),
            ResourceDeclaration(
                type="kubernetes_node_pool",
                name="workers",
                for_each="${var.regions}",
                attributes={
                    "cluster_id": "${kubernetes_cluster.main[each.key].id}",
                    "name": "workers-${each.key}",
                    "size": "s-2vcpu-4gb",
                    "node_count": "${var.nodes}",
                },
            ),
            ResourceDeclaration(
                type="kubernetes_namespace",
                name="apps",
                for_each="${var.regions}",
                attributes={
                    "name": "apps",
                    "host": "${kubernetes_cluster.main[each.key].endpoint}",
                    "token": "${kubernetes_cluster.main[each.key].kube_config_token}",
                    "cluster_ca_certificate": "${kubernetes_cluster.main[each.key].cluster_ca_certificate}",
                },
            ),
        ],
    )


def make_engine(provider=None, store=None, **kwargs):
    provider = provider or InMemoryProvider()
    store = store if store is not None else InMemoryStateStore()
    engine = OrchestrationEngine(
        providers=ProviderRegistry(default=provider),
        store=store,
        executor_config=ExecutorConfig(max_attempts=3, initial_backoff=0.0),
        sleep=lambda _: None,
        **kwargs,
    )
    return engine, provider, store


def test_apply_then_reapply_is_a_no_op():
    engine, provider, store = make_engine()

    first = engine.apply(make_document())
    assert first.mode == ExecutionMode.apply
    assert first.plan.summary() == "Plan: 6 to add, 0 to change, 0 to destroy."
    assert len(store.all()) == 6

    calls_before = len(provider.calls_for("create")) + len(provider.calls_for("update"))
    second = engine.apply(make_document())

    assert second.plan.is_empty
    assert not second.has_changes
    assert second.plan.drift == []
    assert len(provider.calls_for("create")) + len(provider.calls_for("update")) == calls_before


def test_plan_does_not_write_state():
    engine, provider, store = make_engine()

    result = engine.plan(make_document())

    assert result.mode == ExecutionMode.plan
    assert result.has_changes
    assert store.all() == []
    assert provider.resources == {}


def test_cycle_fails_before_any_provider_call():
    engine, provider, store = make_engine()
    doc = DeclarationDocument(
        declarations=[
            ResourceDeclaration(
                type="project_resources", name="a", attributes={"x": "${project_resources.b.id}"}
            ),
            ResourceDeclaration(
                type="project_resources", name="b", attributes={"x": "${project_resources.a.id}"}
            ),
        ]
    )

    with pytest.raises(CyclicDependencyError):
        engine.apply(doc)

    assert provider.calls == []


def test_unresolved_reference_fails_before_any_provider_call():
    engine, provider, store = make_engine()
    engine.apply(make_document(regions=("ams3",)))
    calls = len(provider.calls)

    doc = make_document(regions=("ams3",))
    doc.declarations[1].attributes["cluster_id"] = '${kubernetes_cluster.main["fra1"].id}'

    with pytest.raises(UnresolvedReferenceError):
        engine.plan(doc)
    assert len(provider.calls) == calls


def test_conflicting_declarations_fail_before_any_provider_call():
    engine, provider, store = make_engine()
    doc = make_document()
    doc.declarations.append(
        ResourceDeclaration(
            type="kubernetes_cluster", name="main", attributes={"name": "x", "region": "ams3"}
        )
    )

    with pytest.raises(PlanConflictError):
        engine.apply(doc)
    assert provider.calls == []


def test_variable_change_updates_in_place():
    engine, provider, store = make_engine()
    engine.apply(make_document())

    result = engine.apply(make_document(nodes=3))

    assert [op.action for op in result.plan.operations] == [OperationKind.update, OperationKind.update]
    assert store.get(POOL_AMS).attributes["actual_node_count"] == 3
    assert store.get(POOL_AMS).serial == 2


def test_cluster_replacement_rewires_consumers():
    engine, provider, store = make_engine()
    engine.apply(make_document(regions=("ams3",)))
    old = store.get(CLUSTER_AMS)

    doc = make_document(regions=("ams3",))
    doc.declarations[0].attributes["vpc_uuid"] = "vpc-2"
    result = engine.apply(doc)

    new = store.get(CLUSTER_AMS)
    assert new.resource_id != old.resource_id
    assert old.resource_id not in provider.resources

    ns = store.get(ResourceAddress("kubernetes_namespace", "apps", "ams3"))
    assert ns.inputs["host"] == new.attributes["endpoint"]
    assert store.get(POOL_AMS).inputs["cluster_id"] == new.resource_id
    assert result.plan.counts() == {"create": 3, "update": 0, "delete": 3}

    assert engine.plan(doc).plan.is_empty


def test_drift_is_surfaced_and_corrected():
    engine, provider, store = make_engine()
    engine.apply(make_document(regions=("ams3",)))
    provider.set_attribute(store.get(CLUSTER_AMS).resource_id, "version", "1.27")

    planned = engine.plan(make_document(regions=("ams3",)))
    assert [d.address for d in planned.plan.drift] == [str(CLUSTER_AMS)]
    assert [op.op_id for op in planned.plan.operations] == ['update:kubernetes_cluster.main["ams3"]']
    assert store.get(CLUSTER_AMS).inputs["version"] == "1.29"

    engine.apply(make_document(regions=("ams3",)))
    assert provider.resources[store.get(CLUSTER_AMS).resource_id]["attributes"]["version"] == "1.29"


def test_resource_deleted_out_of_band_is_recreated():
    engine, provider, store = make_engine()
    engine.apply(make_document(regions=("ams3",)))
    del provider.resources[store.get(POOL_AMS).resource_id]

    result = engine.apply(make_document(regions=("ams3",)))

    assert [op.op_id for op in result.plan.operations] == ['create:kubernetes_node_pool.workers["ams3"]']
    assert store.get(POOL_AMS).resource_id in provider.resources


def test_failed_apply_raises_with_partial_result():
    provider = InMemoryProvider(
        permanent_failures={'kubernetes_cluster.main["ams3"]': "quota exceeded"}
    )
    engine, provider, store = make_engine(provider=provider)

    with pytest.raises(ExecutionFailed) as e:
        engine.apply(make_document())

    assert 'create:kubernetes_cluster.main["ams3"]' in e.value.failures
    assert "skipped" in str(e.value.failures['create:kubernetes_node_pool.workers["ams3"]'])
    assert e.value.result.succeeded
    assert len(store.all()) == 3

    # The next run picks up where the failed one stopped.
    provider.permanent_failures.clear()
    result = engine.apply(make_document())
    assert result.plan.counts()["create"] == 3
    assert len(store.all()) == 6
    assert store.pending() == []


def test_interrupted_create_is_recovered_on_apply():
    engine, provider, store = make_engine()
    engine.apply(make_document(regions=("ams3",)))
    pool = store.get(POOL_AMS)

    # Simulate a crash after the provider created the pool but before state was written.
    store.remove(POOL_AMS)
    store.begin(POOL_AMS, OperationKind.create)

    result = engine.apply(make_document(regions=("ams3",)))

    assert result.recovered == [POOL_AMS]
    assert result.plan.is_empty
    assert store.get(POOL_AMS).resource_id == pool.resource_id
    assert store.pending() == []


def test_prevent_destroy_blocks_replacement():
    engine, provider, store = make_engine()
    doc = make_document(regions=("ams3",))
    doc.declarations[0].lifecycle = Lifecycle(prevent_destroy=True)
    engine.apply(doc)
    calls = len(provider.calls)

    doc.declarations[0].attributes["vpc_uuid"] = "vpc-2"
    planned = engine.plan(doc)
    assert not planned.guard.allowed

    with pytest.raises(PolicyRejected, match="prevent_destroy"):
        engine.apply(doc)
    # Only refresh reads happened.
    assert {action for action, _ in provider.calls[calls:]} == {"read"}


def test_destroy_removes_everything_dependents_first():
    engine, provider, store = make_engine()
    engine.apply(make_document(regions=("ams3",)))

    result = engine.destroy()

    assert result.mode == ExecutionMode.destroy
    assert result.plan.destroy
    assert store.all() == []
    assert provider.resources == {}
    deletes = provider.calls_for("delete")
    assert deletes.index('kubernetes_cluster.main["ams3"]') == 2


def test_destroy_honors_prevent_destroy_when_document_given():
    engine, provider, store = make_engine()
    doc = make_document(regions=("ams3",))
    doc.declarations[0].lifecycle = Lifecycle(prevent_destroy=True)
    engine.apply(doc)

    with pytest.raises(PolicyRejected):
        engine.destroy(doc)
    assert len(store.all()) == 3


def test_cancelled_apply_raises_and_keeps_committed_work():
    engine, provider, store = make_engine()
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ExecutionFailed, match="cancelled"):
        engine.apply(make_document(), cancel=cancel)

    assert store.all() == []
    assert provider.calls_for("create") == []


def test_engine_with_file_store(tmp_path):
    engine, provider, store = make_engine(store=FileStateStore(root=tmp_path / "state"))
    engine.apply(make_document())

    reloaded, _, _ = make_engine(provider=provider, store=FileStateStore(root=tmp_path / "state"))
    assert reloaded.plan(make_document()).plan.is_empty


def make_capacity_document(nodes: int) -> DeclarationDocument:
    return DeclarationDocument(
        variables={"nodes": nodes},
        declarations=[
            ResourceDeclaration(
                type="kubernetes_cluster",
                name="main",
                attributes={"name": "k8s", "region": "ams3", "version": "1.29"},
            ),
            ResourceDeclaration(
                type="kubernetes_node_pool",
                name="workers",
                attributes={
                    "cluster_id": "${kubernetes_cluster.main.id}",
                    "name": "workers",
                    "size": "s-2vcpu-4gb",
                    "node_count": "${var.nodes}",
                },
            ),
            ResourceDeclaration(
                type="project_resources",
                name="platform",
                attributes={
                    "project": "platform",
                    "node_total": "${kubernetes_node_pool.workers.actual_node_count}",
                },
            ),
        ],
    )


def test_pool_update_refreshes_consumers_of_its_outputs():
    engine, provider, store = make_engine()
    engine.apply(make_capacity_document(2))

    result = engine.apply(make_capacity_document(3))

    assert [op.op_id for op in result.plan.operations] == [
        "update:kubernetes_node_pool.workers",
        "update:project_resources.platform",
    ]
    record = store.get(ResourceAddress("project_resources", "platform"))
    assert record.inputs["node_total"] == 3
    assert engine.plan(make_capacity_document(3)).plan.is_empty


def test_non_ascii_keys_survive_file_store_reload(tmp_path):
    document = make_document(regions=("zürich", "ams3"))
    engine, provider, store = make_engine(store=FileStateStore(root=tmp_path / "state"))
    engine.apply(document)

    reloaded, _, _ = make_engine(provider=provider, store=FileStateStore(root=tmp_path / "state"))
    plan = reloaded.plan(document).plan

    assert plan.is_empty
    assert ResourceAddress("kubernetes_cluster", "main", "zürich") in plan.unchanged
