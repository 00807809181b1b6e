import pytest

from cluster_orchestrator.agent.guard import ExecutionGuard, GuardConfig
from cluster_orchestrator.core.errors import PolicyRejected
from cluster_orchestrator.core.types import (
    Lifecycle,
    OperationKind,
    Plan,
    PlannedOperation,
    ResourceAddress,
    StateRecord,
)

CLUSTER = ResourceAddress("kubernetes_cluster", "main", "ams3")
POOL = ResourceAddress("kubernetes_node_pool", "workers", "ams3")


def make_record(address: ResourceAddress) -> StateRecord:
    return StateRecord(address=address, resource_id=f"{address.type}-1", inputs={}, attributes={})


def make_plan(*ops: PlannedOperation, destroy: bool = False) -> Plan:
    return Plan(operations=list(ops), destroy=destroy)


def test_plan_without_deletes_is_allowed():
    plan = make_plan(PlannedOperation(action=OperationKind.create, address=CLUSTER))
    decision = ExecutionGuard().decide(plan, {CLUSTER: Lifecycle(prevent_destroy=True)})

    assert decision.allowed
    assert decision.reasons == []


def test_replacement_of_protected_resource_is_refused():
    plan = make_plan(
        PlannedOperation(
            action=OperationKind.delete,
            address=CLUSTER,
            prior=make_record(CLUSTER),
            replacement=True,
        ),
        PlannedOperation(action=OperationKind.create, address=CLUSTER, replacement=True),
    )
    decision = ExecutionGuard().decide(plan, {CLUSTER: Lifecycle(prevent_destroy=True)})

    assert not decision.allowed
    assert decision.reasons == ['kubernetes_cluster.main["ams3"] has prevent_destroy set, plan would replace it']


def test_unprotected_delete_is_allowed():
    plan = make_plan(
        PlannedOperation(action=OperationKind.delete, address=POOL, prior=make_record(POOL))
    )

    assert ExecutionGuard().decide(plan, {CLUSTER: Lifecycle(prevent_destroy=True)}).allowed


def test_destroy_plans_can_be_disabled():
    plan = make_plan(
        PlannedOperation(action=OperationKind.delete, address=POOL, prior=make_record(POOL)),
        destroy=True,
    )
    guard = ExecutionGuard(GuardConfig(allow_destroy=False))

    with pytest.raises(PolicyRejected, match="destroy plans are not allowed"):
        guard.enforce(plan, {})


def test_prevent_destroy_can_be_overridden_for_emergencies():
    plan = make_plan(
        PlannedOperation(action=OperationKind.delete, address=CLUSTER, prior=make_record(CLUSTER))
    )
    guard = ExecutionGuard(GuardConfig(honor_prevent_destroy=False))

    assert guard.enforce(plan, {CLUSTER: Lifecycle(prevent_destroy=True)}).allowed
