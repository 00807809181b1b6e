"""
Resource schemas.

A schema tells the planner and the graph builder what a resource type looks like
from the outside:

force_new
  Identity defining attributes. Changing one requires replacement.

outputs
  Attributes computed by the provider. They may be referenced by other
  resources although they are never declared.

sensitive
  Outputs that must not be printed in plans or logs.

derived
  Outputs an in place update can change, mapped to the inputs they are
  computed from. Outputs not listed keep their value across updates.

create_before_destroy
  Default replacement ordering for the type. Whether replacing a resource can
  keep the old instance alive until the new one exists depends on the
  provider, so it is a per type setting that declarations can override.

Types without a registered schema are still allowed. They get only the
universal id output and no force new attributes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping


@dataclass(frozen=True)
class ResourceSchema:
    type: str
    force_new: FrozenSet[str] = frozenset()
    outputs: FrozenSet[str] = frozenset()
    sensitive: FrozenSet[str] = frozenset()
    create_before_destroy: bool = False
    derived: Mapping[str, FrozenSet[str]] = field(default_factory=dict, hash=False)

    def computed(self) -> FrozenSet[str]:
        return self.outputs | {"id"}

    def outputs_changed_by(self, inputs: Iterable[str]) -> FrozenSet[str]:
        """Return the outputs an update of inputs recomputes."""
        touched = set(inputs)
        return frozenset(out for out, sources in self.derived.items() if sources & touched)


KUBERNETES_CLUSTER = ResourceSchema(
    type="kubernetes_cluster",
    force_new=frozenset({"name", "region", "vpc_uuid"}),
    outputs=frozenset(
        {"urn", "endpoint", "status", "kube_config_token", "cluster_ca_certificate", "ipv4_address"}
    ),
    sensitive=frozenset({"kube_config_token", "cluster_ca_certificate"}),
)

KUBERNETES_NODE_POOL = ResourceSchema(
    type="kubernetes_node_pool",
    force_new=frozenset({"cluster_id", "name", "size"}),
    outputs=frozenset({"nodes", "actual_node_count"}),
    derived={
        "nodes": frozenset({"name", "node_count"}),
        "actual_node_count": frozenset({"node_count"}),
    },
    create_before_destroy=True,
)

PROJECT_RESOURCES = ResourceSchema(
    type="project_resources",
    force_new=frozenset({"project"}),
)

KUBERNETES_NAMESPACE = ResourceSchema(
    type="kubernetes_namespace",
    force_new=frozenset({"name", "host"}),
    outputs=frozenset({"uid"}),
    sensitive=frozenset({"token", "cluster_ca_certificate"}),
)


BUILTIN_SCHEMAS = (
    KUBERNETES_CLUSTER,
    KUBERNETES_NODE_POOL,
    PROJECT_RESOURCES,
    KUBERNETES_NAMESPACE,
)


@dataclass
class SchemaRegistry:
    """Schema lookup keyed by resource type."""

    _schemas: Dict[str, ResourceSchema] = field(default_factory=dict)

    def register(self, schema: ResourceSchema) -> None:
        self._schemas[schema.type] = schema

    def for_type(self, resource_type: str) -> ResourceSchema:
        """Return the registered schema or a permissive default."""
        return self._schemas.get(resource_type) or ResourceSchema(type=resource_type)


def default_schemas(extra: Iterable[ResourceSchema] = ()) -> SchemaRegistry:
    """Return a registry with the managed Kubernetes resource types."""
    reg = SchemaRegistry()
    for schema in BUILTIN_SCHEMAS:
        reg.register(schema)
    for schema in extra:
        reg.register(schema)
    return reg
