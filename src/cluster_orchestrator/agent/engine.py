"""
Orchestration engine.

This engine coordinates:
graph building, refresh, planning, guard evaluation, execution and state
write back.

Determinism and safety
Configuration errors are raised before any provider call.
The guard raises PolicyRejected before any provider call.
The planner is deterministic and never writes.
Plan mode never writes state, even when refresh found drift.
Apply persists repairs of interrupted operations before executing.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import structlog

from cluster_orchestrator.agent.execution_mode import ExecutionMode
from cluster_orchestrator.agent.guard import ExecutionGuard, GuardDecision
from cluster_orchestrator.core.errors import ExecutionFailed, OrchestratorError
from cluster_orchestrator.core.types import Lifecycle, Plan, ResourceAddress
from cluster_orchestrator.declarations.base import DeclarationDocument
from cluster_orchestrator.execution.base import ExecutorConfig, ProviderRegistry
from cluster_orchestrator.execution.executor import ApplyResult, ParallelExecutor
from cluster_orchestrator.graph.builder import (
    ResourceGraph,
    build_resource_graph,
    expand_declarations,
)
from cluster_orchestrator.planner.drift import RefreshResult, refresh_state
from cluster_orchestrator.planner.planner import DeterministicPlanner
from cluster_orchestrator.resources.schemas import SchemaRegistry, default_schemas
from cluster_orchestrator.state.audit import AuditLogger
from cluster_orchestrator.state.store import StateStore

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EngineRunResult:
    """
    Outcome of one engine run.

    plan
    The plan that was computed, with drift attached.

    guard
    The guard decision. Plan mode reports it without raising.

    applied
    Execution outcome. None in plan mode.
    """

    mode: ExecutionMode
    plan: Plan
    guard: GuardDecision
    applied: Optional[ApplyResult] = None
    recovered: list[ResourceAddress] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return not self.plan.is_empty


class OrchestrationEngine:
    """
    Orchestration engine.

    providers
    Provider registry used for refresh and execution.

    store
    State store used as the plan baseline and written by the executor.

    refresh
    When True, live provider state is read before every plan.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore,
        schemas: SchemaRegistry | None = None,
        planner: DeterministicPlanner | None = None,
        guard: ExecutionGuard | None = None,
        executor_config: ExecutorConfig | None = None,
        audit: AuditLogger | None = None,
        refresh: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._providers = providers
        self._store = store
        self._schemas = schemas or default_schemas()
        self._planner = planner or DeterministicPlanner(schemas=self._schemas)
        self._guard = guard or ExecutionGuard()
        self._executor_config = executor_config or ExecutorConfig()
        self._refresh = refresh
        self._sleep = sleep
        self._executor = ParallelExecutor(
            providers=providers,
            store=store,
            config=self._executor_config,
            audit=audit,
            sleep=sleep,
        )

    def build(self, document: DeclarationDocument) -> ResourceGraph:
        """Build the resource graph. Raises ConfigurationError on invalid declarations."""
        return build_resource_graph(document.declarations, document.variables, self._schemas)

    def _refresh_state(self) -> RefreshResult:
        snapshot = self._store.snapshot()
        pending = self._store.pending()

        if not self._refresh:
            if pending:
                log.warning(
                    "interrupted operations recorded but refresh is disabled",
                    addresses=[str(p.address) for p in pending],
                )
            return RefreshResult(snapshot=snapshot)

        return refresh_state(
            snapshot,
            pending,
            self._providers,
            backoffs=self._executor_config.backoffs(),
            sleep=self._sleep,
            schemas=self._schemas,
        )

    def _persist_refresh(self, refreshed: RefreshResult) -> list[ResourceAddress]:
        """
        Write what refresh learned.

        Returns the addresses of reconciled interrupted operations.
        """
        for addr in refreshed.vanished:
            self._store.remove(addr)
            log.info("record of vanished resource removed", address=str(addr))

        done: list[ResourceAddress] = []
        for addr, rec in sorted(refreshed.recovered.items(), key=lambda kv: str(kv[0])):
            if rec is None:
                self._store.remove(addr)
            else:
                refreshed.snapshot[addr] = self._store.commit(rec)
            done.append(addr)
            log.info("interrupted operation reconciled", address=str(addr), live=rec is not None)
        return done

    def plan(self, document: DeclarationDocument) -> EngineRunResult:
        """Compute and return a plan. Nothing is written."""

        graph = self.build(document)
        refreshed = self._refresh_state()
        plan = self._planner.plan(graph, refreshed.snapshot, drifted=refreshed.drifted)
        plan.drift = list(refreshed.drift)

        guard = self._guard.decide(plan, _lifecycles(graph))
        log.info(
            "plan computed", summary=plan.summary(), drift=len(plan.drift), allowed=guard.allowed
        )
        return EngineRunResult(mode=ExecutionMode.plan, plan=plan, guard=guard)

    def apply(
        self,
        document: DeclarationDocument,
        cancel: threading.Event | None = None,
    ) -> EngineRunResult:
        """
        Plan and execute.

        Steps
        1) build graph
        2) refresh, drop vanished records, persist repairs of interrupted operations
        3) plan
        4) guard decision
        5) execute

        Raises PolicyRejected when the guard refuses the plan, and
        ExecutionFailed when any operation did not complete.
        """

        graph = self.build(document)
        refreshed = self._refresh_state()
        recovered = self._persist_refresh(refreshed)

        plan = self._planner.plan(graph, refreshed.snapshot, drifted=refreshed.drifted)
        plan.drift = list(refreshed.drift)
        return self._execute(
            plan, refreshed, _lifecycles(graph), ExecutionMode.apply, recovered, cancel
        )

    def destroy(
        self,
        document: DeclarationDocument | None = None,
        cancel: threading.Event | None = None,
    ) -> EngineRunResult:
        """
        Delete every recorded resource.

        document is optional. When given, its prevent_destroy settings are honored.
        """

        lifecycles: Dict[ResourceAddress, Lifecycle] = {}
        if document is not None:
            instances = expand_declarations(document.declarations, document.variables)
            lifecycles = {addr: inst.lifecycle for addr, inst in instances.items()}

        refreshed = self._refresh_state()
        recovered = self._persist_refresh(refreshed)

        plan = self._planner.plan_destroy(refreshed.snapshot)
        plan.drift = list(refreshed.drift)
        return self._execute(plan, refreshed, lifecycles, ExecutionMode.destroy, recovered, cancel)

    def _execute(
        self,
        plan: Plan,
        refreshed: RefreshResult,
        lifecycles: Dict[ResourceAddress, Lifecycle],
        mode: ExecutionMode,
        recovered: list[ResourceAddress],
        cancel: threading.Event | None,
    ) -> EngineRunResult:
        guard = self._guard.enforce(plan, lifecycles)

        if plan.is_empty:
            log.info("nothing to do", unchanged=len(plan.unchanged))
            return EngineRunResult(
                mode=mode, plan=plan, guard=guard, applied=ApplyResult(), recovered=recovered
            )

        log.info("applying plan", mode=mode.value, summary=plan.summary())
        applied = self._executor.apply(plan, snapshot=refreshed.snapshot, cancel=cancel)
        if not applied.ok:
            raise ExecutionFailed(
                _failure_summary(applied), failures=_failures(applied), result=applied
            )

        return EngineRunResult(
            mode=mode, plan=plan, guard=guard, applied=applied, recovered=recovered
        )


def _lifecycles(graph: ResourceGraph) -> Dict[ResourceAddress, Lifecycle]:
    return {addr: inst.lifecycle for addr, inst in graph.nodes.items()}


def _failures(applied: ApplyResult) -> Dict[str, Exception]:
    failures: Dict[str, Exception] = dict(applied.failed)
    for oid, blocker in applied.skipped.items():
        failures[oid] = OrchestratorError(f"skipped, blocked by {blocker}")
    for oid in applied.cancelled:
        failures[oid] = OrchestratorError("cancelled before start")
    return failures


def _failure_summary(applied: ApplyResult) -> str:
    if applied.cancelled and not applied.failed:
        done, waiting = len(applied.succeeded), len(applied.cancelled)
        return f"apply cancelled: {done} done, {waiting} not started"
    return (
        f"apply failed: {len(applied.failed)} failed, {len(applied.skipped)} skipped, "
        f"{len(applied.cancelled)} cancelled, {len(applied.succeeded)} done"
    )
