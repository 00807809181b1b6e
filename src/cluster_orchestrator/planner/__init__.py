"""
Planner package.

This makes the planner folder an explicit package so both Python and mypy
resolve modules consistently.
"""

from cluster_orchestrator.planner.drift import RefreshResult, refresh_state
from cluster_orchestrator.planner.planner import DeterministicPlanner, PlannerConfig

__all__ = ["DeterministicPlanner", "PlannerConfig", "RefreshResult", "refresh_state"]
