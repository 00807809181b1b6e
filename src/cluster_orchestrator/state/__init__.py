"""Durable state: records, pending journal, and audit log."""

from cluster_orchestrator.state.audit import AuditLogger
from cluster_orchestrator.state.file_store import FileStateStore
from cluster_orchestrator.state.store import InMemoryStateStore, StateStore

__all__ = ["AuditLogger", "FileStateStore", "InMemoryStateStore", "StateStore"]
