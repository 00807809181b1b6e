"""Resource type knowledge shared by the builder, planner and providers."""

from cluster_orchestrator.resources.connection import ClusterConnection
from cluster_orchestrator.resources.schemas import ResourceSchema, SchemaRegistry, default_schemas

__all__ = ["ClusterConnection", "ResourceSchema", "SchemaRegistry", "default_schemas"]
