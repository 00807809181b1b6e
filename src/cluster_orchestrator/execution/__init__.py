"""Plan execution: provider interfaces, retries, output cells and the parallel executor."""

from cluster_orchestrator.execution.base import (
    ExecutorConfig,
    Provider,
    ProviderRegistry,
    ProviderResult,
)
from cluster_orchestrator.execution.executor import ApplyResult, ParallelExecutor
from cluster_orchestrator.execution.mock import InMemoryProvider

__all__ = [
    "ApplyResult",
    "ExecutorConfig",
    "InMemoryProvider",
    "ParallelExecutor",
    "Provider",
    "ProviderRegistry",
    "ProviderResult",
]
