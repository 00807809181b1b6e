"""
Parallel plan executor.

Scheduling
Operations run on a bounded thread pool. An operation is submitted only once
every operation in its after list has succeeded. Independent subtrees, such as
one cluster per region with its own node pool, therefore run side by side up
to max_workers.

Failure handling
Transient provider errors are retried with exponential backoff. A permanent
error, or a transient one that exhausted its retries, fails the operation and
skips every operation that transitively waits for it. Unrelated branches keep
running.

Cancellation
When the cancel event is set, nothing new is submitted. Operations already
running finish, so no provider side resource is left half made. Everything
not started is reported as cancelled.

Outputs
After an operation commits its state record, the resulting attributes are
published to the resource's output cell. Dependents resolve their references
from cells only, so they never see an endpoint or a token before the producing
operation has a recorded success.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from cluster_orchestrator.core.errors import PermanentProviderError
from cluster_orchestrator.core.types import (
    OperationKind,
    Plan,
    PlannedOperation,
    ResourceAddress,
    StateRecord,
)
from cluster_orchestrator.execution.base import ExecutorConfig, ProviderRegistry
from cluster_orchestrator.execution.cells import OutputCells
from cluster_orchestrator.execution.retry import call_with_retries
from cluster_orchestrator.graph.references import contains_unknown, resolve_references
from cluster_orchestrator.state.audit import AuditLogger
from cluster_orchestrator.state.store import StateStore

log = structlog.get_logger(__name__)


@dataclass
class ApplyResult:
    """
    Outcome of applying a plan.

    succeeded
    Operation ids in completion order.

    failed
    Operation id to the error that failed it.

    skipped
    Operation id to the id of the failed operation that blocked it.

    cancelled
    Operation ids never started because the run was cancelled.

    outputs
    Published attributes per address, including unchanged resources.
    """

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, Exception] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)
    outputs: Dict[ResourceAddress, Dict[str, Any]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped and not self.cancelled


class ParallelExecutor:
    """
    Apply a Plan against providers and write results to a StateStore.

    providers
    Maps resource types to providers.

    store
    Receives a pending entry before every provider call and the resulting
    record, or removal, after it.

    audit
    Optional JSONL audit log of committed operations.

    sleep
    Injected for tests so retries do not wait for real.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore,
        config: ExecutorConfig | None = None,
        audit: AuditLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._providers = providers
        self._store = store
        self._config = config or ExecutorConfig()
        self._audit = audit
        self._sleep = sleep

    def apply(
        self,
        plan: Plan,
        snapshot: Dict[ResourceAddress, StateRecord] | None = None,
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        """
        Apply plan.

        snapshot holds the records the plan was computed against. Resources
        the plan does not create or update publish their recorded attributes
        up front, so references to unchanged resources resolve immediately.
        """

        cells = OutputCells()
        result = ApplyResult()

        writes = (OperationKind.create, OperationKind.update)
        produced = {op.address for op in plan.operations if op.action in writes}
        for addr, rec in (snapshot or {}).items():
            if addr not in produced:
                cells.publish(addr, rec.attributes)

        ops = {op.op_id: op for op in plan.operations}
        index = {op.op_id: i for i, op in enumerate(plan.operations)}
        waiting: Dict[str, Set[str]] = {oid: set(op.after) & set(ops) for oid, op in ops.items()}
        followers: Dict[str, List[str]] = {oid: [] for oid in ops}
        for oid, before in waiting.items():
            for b in before:
                followers[b].append(oid)

        ready = sorted(
            (oid for oid, before in waiting.items() if not before), key=index.__getitem__
        )
        running: Dict[Future, str] = {}

        log.info("apply started", operations=len(ops), max_workers=self._config.max_workers)

        workers = self._config.max_workers
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="apply") as pool:
            while ready or running:
                if cancel is not None and cancel.is_set() and ready:
                    log.warning(
                        "apply cancelled; waiting for running operations", running=len(running)
                    )
                    ready = []

                while ready and len(running) < self._config.max_workers:
                    oid = ready.pop(0)
                    running[pool.submit(self._run, ops[oid], cells)] = oid

                if not running:
                    break

                finished, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for fut in sorted(finished, key=lambda f: index[running[f]]):
                    oid = running.pop(fut)
                    exc = fut.exception()

                    if exc is None:
                        result.succeeded.append(oid)
                        for nxt in followers[oid]:
                            waiting[nxt].discard(oid)
                            if not waiting[nxt] and nxt not in result.skipped:
                                ready.append(nxt)
                        ready.sort(key=index.__getitem__)
                        continue

                    result.failed[oid] = exc
                    self._skip_followers(oid, oid, followers, result)

        finished_ids = set(result.succeeded) | set(result.failed) | set(result.skipped)
        result.cancelled = [oid for oid in ops if oid not in finished_ids]
        result.outputs = cells.published()

        log.info(
            "apply finished",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(result.skipped),
            cancelled=len(result.cancelled),
        )
        return result

    def _skip_followers(
        self,
        failed_id: str,
        oid: str,
        followers: Dict[str, List[str]],
        result: ApplyResult,
    ) -> None:
        stack = list(followers[oid])
        while stack:
            nxt = stack.pop()
            if nxt in result.skipped:
                continue
            result.skipped[nxt] = failed_id
            log.warning("operation skipped", operation=nxt, blocked_by=failed_id)
            stack.extend(followers[nxt])

    def _run(self, op: PlannedOperation, cells: OutputCells) -> None:
        """Run one operation: resolve inputs, call the provider, commit, publish."""

        oplog = log.bind(
            address=str(op.address), action=op.action.value, replacement=op.replacement
        )
        provider = self._providers.for_type(op.address.type)
        backoffs = self._config.backoffs()
        addr = op.address

        attrs: Dict[str, Any] = {}
        if op.action in (OperationKind.create, OperationKind.update):
            attrs = resolve_references(
                op.desired, lambda target, attribute: cells.read(target, attribute)
            )
            if contains_unknown(attrs):
                raise PermanentProviderError(
                    "inputs still unknown at apply time", address=str(addr)
                )

        oplog.info("operation started")
        self._store.begin(addr, op.action)

        if op.action == OperationKind.delete:
            prior = op.prior
            if prior is None:
                raise PermanentProviderError("delete without a recorded state", address=str(addr))
            call_with_retries(
                lambda: provider.delete(addr, prior),
                what=f"delete {addr}",
                address=str(addr),
                backoffs=backoffs,
                sleep=self._sleep,
            )
            self._store.remove(addr, expected_id=prior.resource_id)
            self._record_audit(op, prior.resource_id, None)
            oplog.info("operation committed", resource_id=prior.resource_id)
            return

        if op.action == OperationKind.create:
            res = call_with_retries(
                lambda: provider.create(addr, attrs),
                what=f"create {addr}",
                address=str(addr),
                backoffs=backoffs,
                sleep=self._sleep,
            )
        else:
            prior = op.prior
            if prior is None:
                raise PermanentProviderError("update without a recorded state", address=str(addr))
            res = call_with_retries(
                lambda: provider.update(addr, prior, attrs),
                what=f"update {addr}",
                address=str(addr),
                backoffs=backoffs,
                sleep=self._sleep,
            )

        merged = dict(attrs)
        merged.update(res.attributes)
        merged["id"] = res.resource_id

        stored = self._store.commit(
            StateRecord(
                address=addr,
                resource_id=res.resource_id,
                inputs=attrs,
                attributes=merged,
                dependencies=list(op.dependencies),
            )
        )
        cells.publish(addr, stored.attributes)
        self._record_audit(op, stored.resource_id, stored.serial)
        oplog.info("operation committed", resource_id=stored.resource_id, serial=stored.serial)

    def _record_audit(self, op: PlannedOperation, resource_id: str, serial: Optional[int]) -> None:
        if self._audit is None:
            return
        self._audit.log(
            {
                "action": op.action.value,
                "address": str(op.address),
                "resource_id": resource_id,
                "replacement": op.replacement,
                "serial": serial,
            }
        )
