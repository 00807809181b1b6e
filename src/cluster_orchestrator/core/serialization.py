from __future__ import annotations

from typing import Any

from cluster_orchestrator.core.types import Plan
from cluster_orchestrator.graph.references import UNKNOWN
from cluster_orchestrator.resources.schemas import SchemaRegistry, default_schemas

SENSITIVE_PLACEHOLDER = "(sensitive)"
UNKNOWN_PLACEHOLDER = "(known after apply)"


def _render(value: Any) -> Any:
    if value is UNKNOWN:
        return UNKNOWN_PLACEHOLDER
    if isinstance(value, dict):
        return {k: _render(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_render(v) for v in value]
    return value


def plan_to_json(plan: Plan, schemas: SchemaRegistry | None = None) -> dict[str, Any]:
    """
    Plan transport shape.

    Prior state is reduced to its id so secrets in recorded attributes do not
    leak into plan output. Desired attributes that the resource schema marks
    sensitive are masked.
    """
    schemas = schemas or default_schemas()

    operations = []
    for op in plan.operations:
        sensitive = schemas.for_type(op.address.type).sensitive
        desired = {
            k: (SENSITIVE_PLACEHOLDER if k in sensitive else _render(v))
            for k, v in sorted(op.desired.items())
        }
        operations.append(
            {
                "action": op.action.value,
                "address": str(op.address),
                "replacement": op.replacement,
                "changed": list(op.changed),
                "reason": op.reason,
                "desired": desired,
                "prior_id": op.prior.resource_id if op.prior is not None else None,
                "after": list(op.after),
            }
        )

    drift = [{"address": d.address, "message": d.message} for d in plan.drift]

    return {
        "destroy": plan.destroy,
        "operations": operations,
        "unchanged": [str(a) for a in plan.unchanged],
        "drift": drift,
        "summary": plan.counts(),
    }
