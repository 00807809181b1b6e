"""
Static declaration source.

Reads a local YAML or JSON file. JSON is valid YAML, so one loader serves both.

Schema example
variables:
  regions: [ams3, nyc1]
resources:
  - type: kubernetes_cluster
    name: main
    for_each: ${var.regions}
    attributes:
      name: k8s-${each.key}
      region: ${each.value}
  - type: kubernetes_node_pool
    name: workers
    for_each: ${var.regions}
    attributes:
      cluster_id: ${kubernetes_cluster.main[each.key].id}
      size: s-2vcpu-4gb
      node_count: 3
    lifecycle:
      prevent_destroy: false
    depends_on: []
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

from cluster_orchestrator.core.errors import ConfigurationError
from cluster_orchestrator.core.types import Lifecycle, ResourceDeclaration
from cluster_orchestrator.declarations.base import DeclarationDocument, DeclarationSource

_ALLOWED_KEYS = {"type", "name", "attributes", "for_each", "depends_on", "lifecycle"}


def _lifecycle_from_dict(obj: Any, where: str) -> Lifecycle:
    if obj is None:
        return Lifecycle()
    if not isinstance(obj, dict):
        raise ConfigurationError("lifecycle must be a mapping", address=where)

    cbd = obj.get("create_before_destroy")
    return Lifecycle(
        prevent_destroy=bool(obj.get("prevent_destroy", False)),
        create_before_destroy=None if cbd is None else bool(cbd),
    )


def declaration_from_dict(obj: Dict[str, Any], where: str) -> ResourceDeclaration:
    """Convert a dict into a ResourceDeclaration, rejecting malformed entries."""

    rtype = obj.get("type")
    name = obj.get("name")
    if not isinstance(rtype, str) or not rtype or not isinstance(name, str) or not name:
        raise ConfigurationError(f"{where}: resource needs a type and a name")

    label = f"{rtype}.{name}"
    unknown = sorted(set(obj) - _ALLOWED_KEYS)
    if unknown:
        raise ConfigurationError(f"unknown keys {', '.join(unknown)}", address=label)

    attributes = obj.get("attributes", {}) or {}
    if not isinstance(attributes, dict):
        raise ConfigurationError("attributes must be a mapping", address=label)

    depends_on = obj.get("depends_on", []) or []
    if not isinstance(depends_on, list):
        raise ConfigurationError("depends_on must be a list", address=label)

    return ResourceDeclaration(
        type=rtype,
        name=name,
        attributes=dict(attributes),
        for_each=obj.get("for_each"),
        depends_on=[str(d) for d in depends_on],
        lifecycle=_lifecycle_from_dict(obj.get("lifecycle"), label),
    )


def document_from_dict(data: Any, where: str) -> DeclarationDocument:
    if data is None:
        return DeclarationDocument(evidence={"source": where})
    if not isinstance(data, dict):
        raise ConfigurationError(f"{where}: top level must be a mapping")

    variables = data.get("variables", {}) or {}
    if not isinstance(variables, dict):
        raise ConfigurationError(f"{where}: variables must be a mapping")

    resources = data.get("resources", []) or []
    if not isinstance(resources, list):
        raise ConfigurationError(f"{where}: resources must be a list")

    decls = []
    for idx, raw in enumerate(resources):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{where}: resources item {idx} must be a mapping")
        decls.append(declaration_from_dict(raw, f"{where} resources[{idx}]"))

    return DeclarationDocument(
        variables=dict(variables), declarations=decls, evidence={"source": where}
    )


@dataclass(frozen=True)
class StaticDeclarationSource(DeclarationSource):
    """Load declarations from a local YAML or JSON file."""

    path: Path

    def load(self) -> DeclarationDocument:
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{self.path}: invalid YAML: {e}") from e
        return document_from_dict(data, str(self.path))
