"""Guard and orchestration engine."""

from cluster_orchestrator.agent.engine import EngineRunResult, OrchestrationEngine
from cluster_orchestrator.agent.execution_mode import ExecutionMode
from cluster_orchestrator.agent.guard import ExecutionGuard, GuardConfig, GuardDecision

__all__ = [
    "EngineRunResult",
    "ExecutionGuard",
    "ExecutionMode",
    "GuardConfig",
    "GuardDecision",
    "OrchestrationEngine",
]
