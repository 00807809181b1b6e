"""
Output cells.

One cell per resource instance. A cell is published exactly once per run,
after the operation that produced it has committed its state record. Readers
either find a published value or block until one is published.

Cells are how a consumer, such as a namespace wired to one region's cluster,
gets the cluster endpoint, token and CA certificate only once the cluster is
actually ready.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Optional

from cluster_orchestrator.core.errors import OrchestratorError
from cluster_orchestrator.core.types import ResourceAddress


class OutputNotReady(OrchestratorError):
    """Raised when a cell is read before its producer committed."""


class OutputCell:
    def __init__(self) -> None:
        self._ready = threading.Event()
        self._value: Dict[str, Any] = {}

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def publish(self, attributes: Dict[str, Any]) -> None:
        if self._ready.is_set():
            raise RuntimeError("output cell published twice")
        self._value = copy.deepcopy(attributes)
        self._ready.set()

    def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if not self._ready.wait(timeout):
            raise OutputNotReady("outputs are not published yet")
        return self._value


class OutputCells:
    """Registry of cells keyed by address, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._cells: Dict[ResourceAddress, OutputCell] = {}

    def cell(self, address: ResourceAddress) -> OutputCell:
        with self._guard:
            c = self._cells.get(address)
            if c is None:
                c = OutputCell()
                self._cells[address] = c
            return c

    def publish(self, address: ResourceAddress, attributes: Dict[str, Any]) -> None:
        self.cell(address).publish(attributes)

    def is_ready(self, address: ResourceAddress) -> bool:
        return self.cell(address).ready

    def read(self, address: ResourceAddress, attribute: str, timeout: Optional[float] = 0) -> Any:
        """
        Return one published attribute.

        The default timeout of zero never blocks. The scheduler only runs an
        operation once its producers committed, so waiting would hide a bug.
        """
        try:
            values = self.cell(address).get(timeout)
        except OutputNotReady as e:
            raise OutputNotReady(
                f"outputs of {address} are not published yet", address=str(address)
            ) from e
        if attribute not in values:
            raise OutputNotReady(
                f"{address} published no attribute {attribute!r}", address=str(address)
            )
        return values[attribute]

    def published(self) -> Dict[ResourceAddress, Dict[str, Any]]:
        with self._guard:
            items = list(self._cells.items())
        return {addr: c.get(0) for addr, c in items if c.ready}
