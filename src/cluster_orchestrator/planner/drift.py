"""
Refresh and drift detection.

Purpose
Before planning, recorded state is compared with what the provider reports.
Differences are never resolved silently. They are returned as DriftError
entries that the engine attaches to the plan, and the planner diffs against
the refreshed snapshot so the plan shows the correction.

Interrupted operations
A pending journal entry means a previous run stopped between a provider call
and its state write. Refresh reads the provider for that address and returns
what it found as a recovered record, or a removal, for apply to persist.

Output
RefreshResult.snapshot is the refreshed baseline for the planner.
RefreshResult.drifted lists addresses whose computed attributes diverged.
RefreshResult.recovered maps addresses to the record to write, or None to
remove, for interrupted operations.
RefreshResult.vanished lists recorded addresses the provider no longer knows.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from cluster_orchestrator.core.errors import DriftError
from cluster_orchestrator.core.types import (
    OperationKind,
    PendingOperation,
    ResourceAddress,
    StateRecord,
)
from cluster_orchestrator.execution.base import ProviderRegistry, ProviderResult
from cluster_orchestrator.execution.retry import call_with_retries
from cluster_orchestrator.resources.schemas import SchemaRegistry, default_schemas

log = structlog.get_logger(__name__)


@dataclass
class RefreshResult:
    snapshot: Dict[ResourceAddress, StateRecord]
    drift: List[DriftError] = field(default_factory=list)
    drifted: List[ResourceAddress] = field(default_factory=list)
    recovered: Dict[ResourceAddress, Optional[StateRecord]] = field(default_factory=dict)
    vanished: List[ResourceAddress] = field(default_factory=list)


def _differences(recorded: Dict, live: Dict) -> List[str]:
    keys = set(recorded) | set(live)
    return sorted(k for k in keys if recorded.get(k) != live.get(k))


def _refreshed_record(rec: StateRecord, live: ProviderResult) -> StateRecord:
    out = copy.deepcopy(rec)
    out.resource_id = live.resource_id
    out.attributes = copy.deepcopy(live.attributes)
    out.attributes.setdefault("id", live.resource_id)
    out.inputs = {k: copy.deepcopy(live.attributes[k]) for k in rec.inputs if k in live.attributes}
    return out


def refresh_state(
    snapshot: Dict[ResourceAddress, StateRecord],
    pending: Sequence[PendingOperation],
    providers: ProviderRegistry,
    backoffs: Sequence[float] = (),
    sleep: Callable[[float], None] | None = None,
    schemas: SchemaRegistry | None = None,
) -> RefreshResult:
    """
    Re-read live provider state for every record and every pending entry.

    Provider errors propagate after retries. A refresh that cannot see the
    provider must not produce a plan.

    schemas is used to tell inputs from computed outputs when an interrupted
    create left a resource the state never recorded.
    """

    schemas = schemas or default_schemas()
    extra = {"sleep": sleep} if sleep is not None else {}
    result = RefreshResult(snapshot={})

    def read(addr: ResourceAddress, rec: Optional[StateRecord]) -> Optional[ProviderResult]:
        provider = providers.for_type(addr.type)
        return call_with_retries(
            lambda: provider.read(addr, rec),
            what=f"read {addr}",
            address=str(addr),
            backoffs=backoffs,
            **extra,
        )

    pending_by_addr = {p.address: p for p in pending}

    for addr in sorted(snapshot, key=str):
        rec = snapshot[addr]
        if addr in pending_by_addr:
            continue

        live = read(addr, rec)
        if live is None:
            result.drift.append(
                DriftError(
                    "resource no longer exists at the provider",
                    address=str(addr),
                    recorded=rec.attributes,
                )
            )
            result.vanished.append(addr)
            log.warning("drift detected", address=str(addr), kind="deleted")
            continue

        recorded = dict(rec.attributes)
        recorded.setdefault("id", rec.resource_id)
        live_attrs = dict(live.attributes)
        live_attrs.setdefault("id", live.resource_id)
        diffs = _differences(recorded, live_attrs)
        if not diffs:
            result.snapshot[addr] = rec
            continue

        result.drift.append(
            DriftError(
                f"live attributes differ from state: {', '.join(diffs)}",
                address=str(addr),
                recorded=rec.attributes,
                live=live.attributes,
            )
        )
        log.warning("drift detected", address=str(addr), kind="changed", attributes=diffs)
        result.snapshot[addr] = _refreshed_record(rec, live)
        if not any(k in rec.inputs for k in diffs):
            result.drifted.append(addr)

    for addr in sorted(pending_by_addr, key=str):
        entry = pending_by_addr[addr]
        rec = snapshot.get(addr)
        # An interrupted create may have produced a resource the record does not know.
        live = read(addr, None if entry.action == OperationKind.create else rec)

        if live is None:
            result.recovered[addr] = None
            if rec is None:
                message = f"interrupted {entry.action.value} left nothing at the provider"
            elif entry.action == OperationKind.delete:
                message = "interrupted delete completed at the provider"
            else:
                message = "resource no longer exists at the provider"
            result.drift.append(
                DriftError(message, address=str(addr), recorded=rec.attributes if rec else None)
            )
            log.warning(
                "interrupted operation found",
                address=str(addr),
                action=entry.action.value,
                live=False,
            )
            continue

        if rec is None:
            computed = schemas.for_type(addr.type).computed()
            inputs = {k: v for k, v in live.attributes.items() if k not in computed}
            rec = StateRecord(
                address=addr, resource_id=live.resource_id, inputs=inputs, attributes={}
            )
        repaired = _refreshed_record(rec, live)

        result.snapshot[addr] = repaired
        result.recovered[addr] = repaired
        result.drift.append(
            DriftError(
                f"interrupted {entry.action.value} left live resource {live.resource_id}",
                address=str(addr),
                recorded=snapshot[addr].attributes if addr in snapshot else None,
                live=live.attributes,
            )
        )
        log.warning(
            "interrupted operation found", address=str(addr), action=entry.action.value, live=True
        )

    return result
