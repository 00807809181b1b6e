"""
Core types.

This file defines the shared data structures used across the engine.

Important design choice
We keep these types provider neutral.

Provider neutral means:
Declarations describe desired attributes, not API calls.
A Provider may talk to any cloud API, but callers do not care.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Dict, List, Optional, Tuple


def unquote_key(raw: str) -> str:
    """
    Decode an instance key as written between brackets.

    Double quoted keys are JSON strings, so escapes are decoded. Single quoted
    keys are taken literally. Bare keys are returned unchanged.
    """
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        return json.loads(raw)
    if len(raw) >= 2 and raw[0] == raw[-1] == "'":
        return raw[1:-1]
    return raw


@dataclass(frozen=True, order=True)
class ResourceAddress:
    """
    Identity of a resource instance.

    type
      Resource type, for example kubernetes_cluster.

    name
      Declared name, unique per type.

    key
      Instance key for declarations expanded over a for_each set.
      None for single resources.
    """

    type: str
    name: str
    key: Optional[str] = None

    def __str__(self) -> str:
        if self.key is None:
            return f"{self.type}.{self.name}"
        return f"{self.type}.{self.name}[{json.dumps(self.key, ensure_ascii=False)}]"

    @property
    def declaration(self) -> Tuple[str, str]:
        """Return the (type, name) pair of the declaration this instance came from."""
        return (self.type, self.name)

    @classmethod
    def parse(cls, text: str) -> "ResourceAddress":
        """
        Parse the string form back into an address.

        Accepted forms
        type.name
        type.name["key"]
        type.name[key]
        """
        text = text.strip()
        key: Optional[str] = None
        if text.endswith("]") and "[" in text:
            text, raw_key = text[:-1].split("[", 1)
            raw_key = raw_key.strip()
            key = unquote_key(raw_key)

        parts = text.split(".")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"invalid resource address: {text!r}")
        return cls(type=parts[0], name=parts[1], key=key)


@dataclass(frozen=True)
class Lifecycle:
    """
    Per declaration lifecycle policy.

    prevent_destroy
      The guard refuses any plan that deletes or replaces this resource.

    create_before_destroy
      When replacing, create the new instance before deleting the old one.
      None means the resource schema decides.
    """

    prevent_destroy: bool = False
    create_before_destroy: Optional[bool] = None


@dataclass
class ResourceDeclaration:
    """
    A declared resource as read from a declaration document.

    attributes may hold scalars, lists and nested mappings.
    String values may carry ${...} expressions.

    for_each is a list, a mapping, or an expression string that resolves
    to one of those. None means a single instance.
    """

    type: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    for_each: Any = None
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def label(self) -> str:
        return f"{self.type}.{self.name}"


@dataclass(frozen=True)
class Reference:
    """
    A reference from one instance attribute to another instance attribute.

    attribute may be None for depends_on edges, which carry no value.
    """

    target: ResourceAddress
    attribute: Optional[str] = None


@dataclass
class ResourceInstance:
    """
    One node of the resource graph.

    attributes are the desired attributes after for_each and variable
    substitution. They still carry resource references as expressions,
    which are resolved at apply time.
    """

    address: ResourceAddress
    attributes: Dict[str, Any]
    references: List[Reference] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def type(self) -> str:
        return self.address.type

    def dependencies(self) -> List[ResourceAddress]:
        """Return distinct referenced addresses in sorted order."""
        return sorted({ref.target for ref in self.references}, key=str)


class OperationKind(StrEnum):
    """Planned action for one resource instance."""

    create = "create"
    update = "update"
    delete = "delete"
    noop = "no-op"


@dataclass
class StateRecord:
    """
    Last known provider side representation of a resource instance.

    inputs are the resolved desired attributes sent to the provider.
    attributes are inputs plus computed outputs returned by the provider.
    dependencies are the addresses this instance depended on when written,
    used to order deletes of resources that no longer have a declaration.
    serial increases on every write for the same address.
    """

    address: ResourceAddress
    resource_id: str
    inputs: Dict[str, Any]
    attributes: Dict[str, Any]
    dependencies: List[ResourceAddress] = field(default_factory=list)
    serial: int = 1

    @property
    def type(self) -> str:
        return self.address.type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": str(self.address),
            "resource_id": self.resource_id,
            "inputs": self.inputs,
            "attributes": self.attributes,
            "dependencies": [str(d) for d in self.dependencies],
            "serial": self.serial,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "StateRecord":
        return cls(
            address=ResourceAddress.parse(str(obj["address"])),
            resource_id=str(obj["resource_id"]),
            inputs=dict(obj.get("inputs", {}) or {}),
            attributes=dict(obj.get("attributes", {}) or {}),
            dependencies=[ResourceAddress.parse(str(d)) for d in obj.get("dependencies", []) or []],
            serial=int(obj.get("serial", 1)),
        )


@dataclass(frozen=True)
class PendingOperation:
    """
    Journal entry written before a provider call.

    A pending entry that survives until the next run means the process stopped
    between the provider call and the state write.
    """

    address: ResourceAddress
    action: OperationKind
    started_unix: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": str(self.address),
            "action": self.action.value,
            "started_unix": self.started_unix,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "PendingOperation":
        return cls(
            address=ResourceAddress.parse(str(obj["address"])),
            action=OperationKind(str(obj["action"])),
            started_unix=int(obj.get("started_unix", 0)),
        )


@dataclass
class PlannedOperation:
    """
    A single operation produced by the planner.

    desired
      Instance attributes with references still unresolved. Empty for deletes.

    prior
      The state record the operation starts from. None for creates.

    changed
      Attribute names that differ from prior, for display and audit.

    replacement
      True for both halves of a delete plus create replacement.

    after
      Operation ids that must succeed before this one may run.
    """

    action: OperationKind
    address: ResourceAddress
    desired: Dict[str, Any] = field(default_factory=dict)
    prior: Optional[StateRecord] = None
    changed: List[str] = field(default_factory=list)
    replacement: bool = False
    reason: str = ""
    dependencies: List[ResourceAddress] = field(default_factory=list)
    after: List[str] = field(default_factory=list)

    @property
    def op_id(self) -> str:
        return f"{self.action.value}:{self.address}"

    def describe(self) -> str:
        marker = {
            OperationKind.create: "+",
            OperationKind.update: "~",
            OperationKind.delete: "-",
            OperationKind.noop: " ",
        }[self.action]
        text = f"{marker} {self.action.value} {self.address}"
        if self.replacement:
            text += " (replace)"
        if self.changed:
            text += f" [{', '.join(self.changed)}]"
        return text


@dataclass
class Plan:
    """
    Plan is the structured output of the planner.

    operations are ordered so that applying them one by one in list order is
    always valid. The executor may run independent operations concurrently.

    unchanged lists addresses whose plan is a no-op.
    drift lists divergences found by refresh, shown to the operator.
    """

    operations: List[PlannedOperation]
    unchanged: List[ResourceAddress] = field(default_factory=list)
    drift: List[Any] = field(default_factory=list)
    destroy: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def counts(self) -> Dict[str, int]:
        kinds = (OperationKind.create, OperationKind.update, OperationKind.delete)
        result = {kind.value: 0 for kind in kinds}
        for op in self.operations:
            result[op.action.value] += 1
        return result

    def summary(self) -> str:
        c = self.counts()
        return f"Plan: {c['create']} to add, {c['update']} to change, {c['delete']} to destroy."
