"""
State store.

The store is the only shared mutable resource of a run. It persists the last
known provider side representation of every resource instance, keyed by
address, and a journal of operations in flight.

Write protocol used by the executor
1) begin(address, action) records a pending entry
2) the provider call runs
3) commit(record) or remove(address) writes the result and clears the entry

A pending entry that is still present at the next run means the process died
between steps 2 and 3. Refresh reads the provider to repair it.

Records are never written speculatively. Writes for different addresses do not
contend. Each address has its own lock.
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from cluster_orchestrator.core.types import (
    OperationKind,
    PendingOperation,
    ResourceAddress,
    StateRecord,
)


class StateStore(Protocol):
    """State store interface expected by the engine and executor."""

    def get(self, address: ResourceAddress) -> Optional[StateRecord]:
        """Return the record for an address if present."""

    def all(self) -> List[StateRecord]:
        """Return all records sorted by address."""

    def snapshot(self) -> Dict[ResourceAddress, StateRecord]:
        """Return an independent copy of all records, used as a plan baseline."""

    def begin(self, address: ResourceAddress, action: OperationKind) -> None:
        """Record that a provider call for address is about to run."""

    def commit(self, record: StateRecord) -> StateRecord:
        """Write a record after a successful provider call and clear the pending entry."""

    def remove(self, address: ResourceAddress, expected_id: Optional[str] = None) -> None:
        """Remove a record after a successful delete and clear the pending entry."""

    def pending(self) -> List[PendingOperation]:
        """Return pending entries left by interrupted operations."""

    def clear_pending(self, address: ResourceAddress) -> None:
        """Drop a pending entry without touching the record."""


class AddressLocks:
    """Lazily created per address locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[ResourceAddress, threading.Lock] = {}

    def __call__(self, address: ResourceAddress) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(address)
            if lock is None:
                lock = threading.Lock()
                self._locks[address] = lock
            return lock


def next_serial(previous: Optional[StateRecord], record: StateRecord) -> StateRecord:
    """Return a copy of record with its serial set after the previous record."""
    out = copy.deepcopy(record)
    out.serial = previous.serial + 1 if previous is not None else 1
    return out


@dataclass
class InMemoryStateStore(StateStore):
    """
    In memory store.

    Used by tests and by plan only runs that must not touch disk.
    """

    records: Dict[ResourceAddress, StateRecord] = field(default_factory=dict)
    journal: Dict[ResourceAddress, PendingOperation] = field(default_factory=dict)
    _locks: AddressLocks = field(default_factory=AddressLocks, repr=False)

    def get(self, address: ResourceAddress) -> Optional[StateRecord]:
        rec = self.records.get(address)
        return copy.deepcopy(rec) if rec is not None else None

    def all(self) -> List[StateRecord]:
        return [copy.deepcopy(self.records[a]) for a in sorted(list(self.records), key=str)]

    def snapshot(self) -> Dict[ResourceAddress, StateRecord]:
        return {rec.address: rec for rec in self.all()}

    def begin(self, address: ResourceAddress, action: OperationKind) -> None:
        with self._locks(address):
            self.journal[address] = PendingOperation(
                address=address, action=action, started_unix=int(time.time())
            )

    def commit(self, record: StateRecord) -> StateRecord:
        with self._locks(record.address):
            stored = next_serial(self.records.get(record.address), record)
            self.records[record.address] = stored
            self.journal.pop(record.address, None)
            return copy.deepcopy(stored)

    def remove(self, address: ResourceAddress, expected_id: Optional[str] = None) -> None:
        with self._locks(address):
            current = self.records.get(address)
            if current is not None and (expected_id is None or current.resource_id == expected_id):
                del self.records[address]
            self.journal.pop(address, None)

    def pending(self) -> List[PendingOperation]:
        return [self.journal[a] for a in sorted(list(self.journal), key=str)]

    def clear_pending(self, address: ResourceAddress) -> None:
        with self._locks(address):
            self.journal.pop(address, None)
