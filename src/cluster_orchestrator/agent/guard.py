"""
Execution guard.

Purpose
Decide whether a plan may be executed.

The planner proposes operations.
The guard decides whether execution is allowed.

Rules
1) A plan may not delete or replace a resource declared with
   lifecycle.prevent_destroy.
2) A destroy plan is refused unless destroy is explicitly allowed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from cluster_orchestrator.core.errors import PolicyRejected
from cluster_orchestrator.core.types import Lifecycle, OperationKind, Plan, ResourceAddress


@dataclass(frozen=True)
class GuardDecision:
    """
    Guard decision.

    allowed
    If False, the engine must not proceed with apply.

    reasons
    Human readable reasons suitable for an alert.
    """

    allowed: bool
    reasons: list[str]


@dataclass(frozen=True)
class GuardConfig:
    """
    Guard configuration.

    allow_destroy
    When False, destroy plans are refused.

    honor_prevent_destroy
    When False, prevent_destroy is ignored. Meant for emergency teardown only.
    """

    allow_destroy: bool = True
    honor_prevent_destroy: bool = True


class ExecutionGuard:
    """Decide whether a plan may run."""

    def __init__(self, config: GuardConfig | None = None) -> None:
        self._config = config or GuardConfig()

    def decide(self, plan: Plan, lifecycles: Dict[ResourceAddress, Lifecycle]) -> GuardDecision:
        """
        Evaluate plan against lifecycle policies.

        lifecycles maps declared addresses to their lifecycle. Resources that
        are no longer declared have no lifecycle and are never protected.
        """

        reasons: list[str] = []

        if plan.destroy and not self._config.allow_destroy:
            reasons.append("destroy plans are not allowed by configuration")

        if self._config.honor_prevent_destroy:
            for op in plan.operations:
                if op.action != OperationKind.delete:
                    continue
                lc = lifecycles.get(op.address)
                if lc is not None and lc.prevent_destroy:
                    verb = "replace" if op.replacement else "delete"
                    reasons.append(f"{op.address} has prevent_destroy set, plan would {verb} it")

        return GuardDecision(allowed=not reasons, reasons=reasons)

    def enforce(self, plan: Plan, lifecycles: Dict[ResourceAddress, Lifecycle]) -> GuardDecision:
        """Like decide, but raise PolicyRejected when the plan is refused."""
        decision = self.decide(plan, lifecycles)
        if not decision.allowed:
            raise PolicyRejected("; ".join(decision.reasons))
        return decision
