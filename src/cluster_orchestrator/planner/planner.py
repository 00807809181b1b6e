"""
Deterministic planner.

Purpose
This planner diffs the desired graph against recorded state and produces a
Plan that the executor can apply safely.

Why deterministic
The same declarations and the same state must always produce the same plan,
operation for operation and in the same order. Ties between independent
operations are broken by address string.

Diff rules per instance
no record                       create
record, nothing changed         no-op
record, changed force new attr  replace, one delete and one create
record, other changes           update
record without declaration      delete

References are resolved against recorded attributes when the producer is
unchanged. They are unknown when the producer is created or replaced, and an
unknown force new attribute forces replacement of the consumer too. An in place
update makes the outputs its schema derives from the changed inputs unknown.

Replacement ordering
Destroy before create is the default: delete X, create X, then update X's
dependents. With create before destroy: create X, update X's dependents, then
delete the old X. In both modes the new X exists before any dependent update.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from cluster_orchestrator.core.errors import CyclicDependencyError
from cluster_orchestrator.core.types import (
    OperationKind,
    Plan,
    PlannedOperation,
    ResourceAddress,
    ResourceInstance,
    StateRecord,
)
from cluster_orchestrator.graph.builder import ResourceGraph, find_cycle
from cluster_orchestrator.graph.references import UNKNOWN, resolve_references
from cluster_orchestrator.resources.schemas import SchemaRegistry, default_schemas

_ACTION_RANK = {OperationKind.delete: 0, OperationKind.create: 1, OperationKind.update: 2}


@dataclass
class PlannerConfig:
    """
    Planner configuration.

    create_before_destroy
    Overrides the replacement ordering for every resource type when set.
    None leaves the decision to declarations and schemas.
    """

    create_before_destroy: Optional[bool] = None


@dataclass
class _Decision:
    action: OperationKind
    replacement: bool = False
    changed: List[str] = field(default_factory=list)
    resolved: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""


class DeterministicPlanner:
    """
    A strict planner that produces a Plan from a ResourceGraph and a state snapshot.

    The planner never calls providers and never writes state.
    """

    def __init__(
        self,
        schemas: SchemaRegistry | None = None,
        config: PlannerConfig | None = None,
    ) -> None:
        self._schemas = schemas or default_schemas()
        self._config = config or PlannerConfig()

    def plan(
        self,
        graph: ResourceGraph,
        snapshot: Dict[ResourceAddress, StateRecord],
        drifted: Iterable[ResourceAddress] = (),
    ) -> Plan:
        """
        Compute the ordered operation list for graph against snapshot.

        drifted lists addresses whose live attributes diverged from state in a
        way the attribute diff cannot see, for example computed outputs.
        They are planned as updates so apply re-reads them.
        """

        drifted_set = set(drifted)
        decisions: Dict[ResourceAddress, _Decision] = {}

        for addr in graph.topological_order():
            decisions[addr] = self._decide(graph.nodes[addr], snapshot, decisions, drifted_set)

        operations: List[PlannedOperation] = []
        unchanged: List[ResourceAddress] = []

        for addr in sorted(decisions, key=str):
            d = decisions[addr]
            inst = graph.nodes[addr]
            prior = snapshot.get(addr)
            deps = inst.dependencies()

            if d.action == OperationKind.noop:
                unchanged.append(addr)
                continue

            if d.replacement:
                operations.append(
                    PlannedOperation(
                        action=OperationKind.delete,
                        address=addr,
                        prior=prior,
                        changed=list(d.changed),
                        replacement=True,
                        reason=d.reason,
                    )
                )
                operations.append(
                    PlannedOperation(
                        action=OperationKind.create,
                        address=addr,
                        desired=inst.attributes,
                        changed=list(d.changed),
                        replacement=True,
                        reason=d.reason,
                        dependencies=deps,
                    )
                )
                continue

            operations.append(
                PlannedOperation(
                    action=d.action,
                    address=addr,
                    desired=inst.attributes,
                    prior=prior,
                    changed=list(d.changed),
                    reason=d.reason,
                    dependencies=deps,
                )
            )

        for addr in sorted(set(snapshot) - set(graph.nodes), key=str):
            operations.append(
                PlannedOperation(
                    action=OperationKind.delete,
                    address=addr,
                    prior=snapshot[addr],
                    reason="no longer declared",
                )
            )

        self._link(operations, graph, snapshot)
        return Plan(operations=_order(operations), unchanged=unchanged)

    def plan_destroy(self, snapshot: Dict[ResourceAddress, StateRecord]) -> Plan:
        """
        Build a delete only plan for every recorded resource.

        Dependents are deleted before the resources they depend on, using the
        dependencies stored with each record.
        """

        operations = [
            PlannedOperation(
                action=OperationKind.delete,
                address=addr,
                prior=snapshot[addr],
                reason="destroy",
            )
            for addr in sorted(snapshot, key=str)
        ]
        self._link(operations, ResourceGraph(nodes={}), snapshot)
        return Plan(operations=_order(operations), destroy=True)

    def _create_before_destroy(self, inst: ResourceInstance) -> bool:
        if self._config.create_before_destroy is not None:
            return self._config.create_before_destroy
        if inst.lifecycle.create_before_destroy is not None:
            return inst.lifecycle.create_before_destroy
        return self._schemas.for_type(inst.type).create_before_destroy

    def _effective_create_before_destroy(
        self,
        operations: List[PlannedOperation],
        graph: ResourceGraph,
    ) -> Dict[ResourceAddress, bool]:
        replaced = {op.address for op in operations if op.replacement}
        result: Dict[ResourceAddress, bool] = {}
        for addr in graph.topological_order():
            if addr not in replaced:
                continue
            own = self._create_before_destroy(graph.nodes[addr])
            result[addr] = own and all(result.get(dep, True) for dep in graph.dependencies_of(addr))
        return result

    def _decide(
        self,
        inst: ResourceInstance,
        snapshot: Dict[ResourceAddress, StateRecord],
        decisions: Dict[ResourceAddress, _Decision],
        drifted: Set[ResourceAddress],
    ) -> _Decision:
        prior = snapshot.get(inst.address)
        if prior is None:
            return _Decision(action=OperationKind.create, reason="not recorded in state")

        def lookup(target: ResourceAddress, attribute: str) -> Any:
            d = decisions[target]
            if d.action == OperationKind.create or d.replacement:
                return UNKNOWN
            if d.action == OperationKind.update:
                if attribute in d.resolved:
                    return d.resolved[attribute]
                if attribute in self._schemas.for_type(target.type).outputs_changed_by(d.changed):
                    return UNKNOWN
            return snapshot[target].attributes.get(attribute, UNKNOWN)

        resolved = resolve_references(inst.attributes, lookup)

        missing = object()
        changed = sorted(
            k
            for k in set(resolved) | set(prior.inputs)
            if resolved.get(k, missing) != prior.inputs.get(k, missing)
        )

        if not changed:
            if inst.address in drifted:
                return _Decision(
                    action=OperationKind.update,
                    resolved=resolved,
                    reason="correct drift in computed attributes",
                )
            return _Decision(action=OperationKind.noop, resolved=resolved)

        force_new = self._schemas.for_type(inst.type).force_new
        forcing = [k for k in changed if k in force_new]
        if forcing:
            return _Decision(
                action=OperationKind.create,
                replacement=True,
                changed=changed,
                resolved=resolved,
                reason=f"{', '.join(forcing)} forces replacement",
            )

        return _Decision(
            action=OperationKind.update,
            changed=changed,
            resolved=resolved,
            reason="update in place",
        )

    def _link(
        self,
        operations: List[PlannedOperation],
        graph: ResourceGraph,
        snapshot: Dict[ResourceAddress, StateRecord],
    ) -> None:
        """
        Fill PlannedOperation.after with the ids each operation waits for.

        create/update X waits for create/update of every dependency of X.
        delete X waits for delete of every resource that depends on X, in the
        graph or in recorded state.
        A destroy before create replacement's create waits for its delete.
        A create before destroy delete, and an orphan delete, also wait for
        creates and updates of X's dependents, so they move off X first.

        A create before destroy replacement that depends on a destroy before
        create replacement is linked destroy before create too. The old
        dependency cannot be deleted while the old dependent still exists.
        """

        by_id = {op.op_id: op for op in operations}
        cbd = self._effective_create_before_destroy(operations, graph)

        def op_id(action: OperationKind, addr: ResourceAddress) -> Optional[str]:
            key = f"{action.value}:{addr}"
            return key if key in by_id else None

        dependents: Dict[ResourceAddress, Set[ResourceAddress]] = {}
        for addr, deps in graph.dependencies.items():
            for d in deps:
                dependents.setdefault(d, set()).add(addr)
        for addr, rec in snapshot.items():
            for d in rec.dependencies:
                dependents.setdefault(d, set()).add(addr)

        for op in operations:
            after: Set[str] = set()

            if op.action in (OperationKind.create, OperationKind.update):
                for dep in graph.dependencies_of(op.address):
                    for action in (OperationKind.create, OperationKind.update):
                        found = op_id(action, dep)
                        if found:
                            after.add(found)

                if op.action == OperationKind.create and op.replacement:
                    if not cbd[op.address]:
                        after.add(f"{OperationKind.delete.value}:{op.address}")

            else:
                for dep in dependents.get(op.address, ()):
                    found = op_id(OperationKind.delete, dep)
                    if found:
                        after.add(found)

                moves_first = not op.replacement
                if op.replacement and cbd[op.address]:
                    moves_first = True
                    after.add(f"{OperationKind.create.value}:{op.address}")

                if moves_first:
                    for dep in dependents.get(op.address, ()):
                        for action in (OperationKind.create, OperationKind.update):
                            found = op_id(action, dep)
                            if found:
                                after.add(found)

            after.discard(op.op_id)
            op.after = sorted(after)


def _order(operations: List[PlannedOperation]) -> List[PlannedOperation]:
    """
    Topologically order operations by their after lists.

    Heap key is (level, address string, action rank), so independent
    operations at the same depth come out in identity order.
    """

    by_id = {op.op_id: op for op in operations}
    waiting = {op.op_id: len(op.after) for op in operations}
    followers: Dict[str, List[str]] = {}
    for op in operations:
        for before in op.after:
            followers.setdefault(before, []).append(op.op_id)

    heap: List[Tuple[int, str, int, str]] = []
    level: Dict[str, int] = {}
    for op in operations:
        if not op.after:
            level[op.op_id] = 0
            heapq.heappush(heap, (0, str(op.address), _ACTION_RANK[op.action], op.op_id))

    ordered: List[PlannedOperation] = []
    while heap:
        lvl, _, _, oid = heapq.heappop(heap)
        ordered.append(by_id[oid])
        for nxt in followers.get(oid, []):
            level[nxt] = max(level.get(nxt, 0), lvl + 1)
            waiting[nxt] -= 1
            if waiting[nxt] == 0:
                op = by_id[nxt]
                heapq.heappush(heap, (level[nxt], str(op.address), _ACTION_RANK[op.action], nxt))

    if len(ordered) != len(operations):
        edges = {oid: set(op.after) for oid, op in by_id.items()}
        cycle = find_cycle(list(by_id), edges)  # type: ignore[arg-type]
        raise CyclicDependencyError(cycle or sorted(by_id))

    return ordered
