"""
Execution modes.

plan
Refresh, build the plan and report it. Nothing is written.

apply
Plan and execute. Re-running with converged state is a no-op.

destroy
Delete every recorded resource, dependents first.
"""

from __future__ import annotations

from enum import StrEnum


class ExecutionMode(StrEnum):
    plan = "plan"
    apply = "apply"
    destroy = "destroy"
