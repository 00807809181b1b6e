"""Resource graph construction and expression handling."""

from cluster_orchestrator.graph.builder import ResourceGraph, build_resource_graph

__all__ = ["ResourceGraph", "build_resource_graph"]
