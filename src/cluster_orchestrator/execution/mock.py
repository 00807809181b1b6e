"""
In memory provider.

This provider is used for tests, local simulations and the CLI.
It behaves like a tiny cloud control API keyed by resource id.

Features
- Generates computed outputs for the managed Kubernetes resource types:
  cluster endpoint, token and base64 CA certificate, node pool nodes,
  namespace uid
- Checks that a namespace is wired to a running cluster it knows about
- Injects transient or permanent failures per address
- Records every call and the peak number of concurrent calls
- Optionally persists its resources to a JSON file between CLI runs
"""

from __future__ import annotations

import base64
import copy
import hashlib
import itertools
import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cluster_orchestrator.core.errors import PermanentProviderError, TransientProviderError
from cluster_orchestrator.core.types import ResourceAddress, StateRecord
from cluster_orchestrator.execution.base import Provider, ProviderResult
from cluster_orchestrator.resources.connection import ClusterConnection


def _fake_ca(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    pem = f"-----BEGIN CERTIFICATE-----\n{digest}\n-----END CERTIFICATE-----\n"
    return base64.b64encode(pem.encode("ascii")).decode("ascii")


@dataclass
class InMemoryProvider(Provider):
    """
    In memory provider.

    transient_failures
    Address string to the number of calls that raise TransientProviderError
    before calls for that address start succeeding.

    permanent_failures
    Address string to an error message raised on every call.

    latency
    Seconds each call sleeps, to make concurrency observable in tests.
    """

    resources: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    transient_failures: Dict[str, int] = field(default_factory=dict)
    permanent_failures: Dict[str, str] = field(default_factory=dict)
    latency: float = 0.0
    calls: List[Tuple[str, str]] = field(default_factory=list)
    max_concurrency: int = 0

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._active = 0
        start = 1 + max((int(e.get("seq", 0)) for e in self.resources.values()), default=0)
        self._ids = itertools.count(start)

    def _enter(self, action: str, address: ResourceAddress) -> None:
        key = str(address)
        with self._lock:
            self.calls.append((action, key))
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)

            if key in self.permanent_failures:
                self._active -= 1
                raise PermanentProviderError(self.permanent_failures[key], address=key)

            remaining = self.transient_failures.get(key, 0)
            if remaining > 0:
                self.transient_failures[key] = remaining - 1
                self._active -= 1
                raise TransientProviderError("rate limited, try again", address=key)

        if self.latency:
            time.sleep(self.latency)

    def _exit(self) -> None:
        with self._lock:
            self._active -= 1

    def _outputs(
        self,
        address: ResourceAddress,
        resource_id: str,
        attributes: Dict[str, Any],
    ) -> Dict[str, Any]:
        if address.type == "kubernetes_cluster":
            return {
                "urn": f"do:kubernetes:{resource_id}",
                "endpoint": f"https://{resource_id}.k8s.example.com",
                "status": "running",
                "kube_config_token": hashlib.sha256(f"token:{resource_id}".encode()).hexdigest(),
                "cluster_ca_certificate": _fake_ca(resource_id),
                "ipv4_address": "203.0.113.10",
            }

        if address.type == "kubernetes_node_pool":
            count = int(attributes.get("node_count", 1))
            name = attributes.get("name", address.name)
            return {
                "nodes": [f"{name}-{i}" for i in range(count)],
                "actual_node_count": count,
            }

        if address.type == "kubernetes_namespace":
            conn = ClusterConnection.from_attributes(attributes, address=str(address))
            if not self._cluster_serves(conn):
                raise PermanentProviderError(
                    f"no running cluster answers at {conn.endpoint}", address=str(address)
                )
            return {"uid": hashlib.sha256(f"ns:{resource_id}".encode()).hexdigest()[:16]}

        return {}

    def _cluster_serves(self, conn: ClusterConnection) -> bool:
        with self._lock:
            for entry in self.resources.values():
                attrs = entry["attributes"]
                if (
                    entry["type"] == "kubernetes_cluster"
                    and attrs.get("endpoint") == conn.endpoint
                    and attrs.get("kube_config_token") == conn.token
                    and attrs.get("status") == "running"
                ):
                    return True
        return False

    def create(self, address: ResourceAddress, attributes: Dict[str, Any]) -> ProviderResult:
        self._enter("create", address)
        try:
            seq = next(self._ids)
            resource_id = f"{address.type}-{seq}"
            merged = copy.deepcopy(attributes)
            merged.update(self._outputs(address, resource_id, attributes))
            with self._lock:
                self.resources[resource_id] = {
                    "seq": seq,
                    "type": address.type,
                    "address": str(address),
                    "attributes": merged,
                }
            return ProviderResult(resource_id=resource_id, attributes=copy.deepcopy(merged))
        finally:
            self._exit()

    def read(
        self,
        address: ResourceAddress,
        record: Optional[StateRecord],
    ) -> Optional[ProviderResult]:
        self._enter("read", address)
        try:
            with self._lock:
                if record is not None:
                    entry = self.resources.get(record.resource_id)
                    rid = record.resource_id
                else:
                    wanted = str(address)
                    matches = [
                        (e["seq"], rid)
                        for rid, e in self.resources.items()
                        if e["address"] == wanted
                    ]
                    if not matches:
                        return None
                    rid = max(matches)[1]
                    entry = self.resources[rid]
                if entry is None:
                    return None
                return ProviderResult(
                    resource_id=rid, attributes=copy.deepcopy(entry["attributes"])
                )
        finally:
            self._exit()

    def update(
        self,
        address: ResourceAddress,
        record: StateRecord,
        attributes: Dict[str, Any],
    ) -> ProviderResult:
        self._enter("update", address)
        try:
            with self._lock:
                entry = self.resources.get(record.resource_id)
            if entry is None:
                raise PermanentProviderError(
                    f"resource {record.resource_id} does not exist", address=str(address)
                )

            merged = copy.deepcopy(entry["attributes"])
            merged.update(copy.deepcopy(attributes))
            merged.update(self._outputs(address, record.resource_id, merged))
            with self._lock:
                entry["attributes"] = merged
            return ProviderResult(resource_id=record.resource_id, attributes=copy.deepcopy(merged))
        finally:
            self._exit()

    def delete(self, address: ResourceAddress, record: StateRecord) -> None:
        self._enter("delete", address)
        try:
            with self._lock:
                self.resources.pop(record.resource_id, None)
        finally:
            self._exit()

    def calls_for(self, action: str) -> List[str]:
        """Return addresses called with action, in call order."""
        with self._lock:
            return [addr for act, addr in self.calls if act == action]

    def set_attribute(self, resource_id: str, key: str, value: Any) -> None:
        """Change a live attribute behind the orchestrator's back."""
        with self._lock:
            self.resources[resource_id]["attributes"][key] = value

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            payload = {"resources": self.resources}
            path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "InMemoryProvider":
        if not path.exists():
            return cls()
        data = json.loads(path.read_text(encoding="utf-8"))
        return cls(resources=dict(data.get("resources", {}) or {}))
