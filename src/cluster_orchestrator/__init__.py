"""
cluster_orchestrator

This package is a small reconciliation engine for managed Kubernetes
clusters, their node pools and the resources that consume their credentials.

We keep modules small and well separated:
core contains shared data structures, errors and logging setup
declarations contains declaration loading
graph contains for_each expansion, references and the dependency graph
planner contains the deterministic planner and refresh
execution contains providers, retries, output cells and the parallel executor
state contains the state stores and the audit log
agent contains the guard and the orchestration engine
"""

__version__ = "0.1.0"
