"""
File backed state store.

Layout under the state directory
records/<address>.json   one StateRecord per resource instance
pending/<address>.json   one PendingOperation per operation in flight

The address is percent encoded to form the file name.

Every write goes to a temporary file in the same directory followed by
os.replace, so a reader sees either the old or the new document, never a
partial one. One file per address means writes for different addresses
never contend, and only a per address lock is needed.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import structlog

from cluster_orchestrator.core.types import (
    OperationKind,
    PendingOperation,
    ResourceAddress,
    StateRecord,
)
from cluster_orchestrator.state.store import AddressLocks, StateStore, next_serial

log = structlog.get_logger(__name__)


def _file_name(address: ResourceAddress) -> str:
    return quote(str(address), safe="") + ".json"


def _documents(directory: Path) -> List[Path]:
    return sorted(p for p in directory.glob("*.json") if not p.name.startswith(".tmp-"))


def _atomic_write(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


@dataclass
class FileStateStore(StateStore):
    """
    Durable store in a local directory.

    root
    Directory that holds records and pending entries. Created on first write.
    """

    root: Path
    _locks: AddressLocks = field(default_factory=AddressLocks, repr=False)

    @property
    def records_dir(self) -> Path:
        return self.root / "records"

    @property
    def pending_dir(self) -> Path:
        return self.root / "pending"

    def _record_path(self, address: ResourceAddress) -> Path:
        return self.records_dir / _file_name(address)

    def _pending_path(self, address: ResourceAddress) -> Path:
        return self.pending_dir / _file_name(address)

    def _read_record(self, path: Path) -> Optional[StateRecord]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        return StateRecord.from_dict(data)

    def get(self, address: ResourceAddress) -> Optional[StateRecord]:
        return self._read_record(self._record_path(address))

    def all(self) -> List[StateRecord]:
        if not self.records_dir.exists():
            return []

        records: List[StateRecord] = []
        for p in _documents(self.records_dir):
            rec = self._read_record(p)
            if rec is not None:
                records.append(rec)
        return sorted(records, key=lambda r: str(r.address))

    def snapshot(self) -> Dict[ResourceAddress, StateRecord]:
        return {rec.address: rec for rec in self.all()}

    def begin(self, address: ResourceAddress, action: OperationKind) -> None:
        entry = PendingOperation(address=address, action=action, started_unix=int(time.time()))
        with self._locks(address):
            _atomic_write(self._pending_path(address), entry.to_dict())

    def commit(self, record: StateRecord) -> StateRecord:
        with self._locks(record.address):
            stored = next_serial(self.get(record.address), record)
            _atomic_write(self._record_path(record.address), stored.to_dict())
            self._pending_path(record.address).unlink(missing_ok=True)
        log.debug("state record written", address=str(record.address), serial=stored.serial)
        return stored

    def remove(self, address: ResourceAddress, expected_id: Optional[str] = None) -> None:
        with self._locks(address):
            current = self.get(address)
            if current is not None and (expected_id is None or current.resource_id == expected_id):
                self._record_path(address).unlink(missing_ok=True)
            self._pending_path(address).unlink(missing_ok=True)
        log.debug("state record removed", address=str(address))

    def pending(self) -> List[PendingOperation]:
        if not self.pending_dir.exists():
            return []

        entries: List[PendingOperation] = []
        for p in _documents(self.pending_dir):
            data = json.loads(p.read_text(encoding="utf-8"))
            entries.append(PendingOperation.from_dict(data))
        return sorted(entries, key=lambda e: str(e.address))

    def clear_pending(self, address: ResourceAddress) -> None:
        with self._locks(address):
            self._pending_path(address).unlink(missing_ok=True)
