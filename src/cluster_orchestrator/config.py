"""Runtime settings with environment variable overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

PREFIX = "ORCHESTRATOR_"


def _env(name: str, default: str, convert: Callable[[str], Any] = str) -> Any:
    return field(default_factory=lambda: convert(os.environ.get(PREFIX + name, default)))


def _optional_path() -> Path | None:
    raw = os.environ.get(PREFIX + "AUDIT_LOG")
    return Path(raw) if raw else None


@dataclass(frozen=True)
class Settings:
    """
    Process wide settings.

    Every field reads an environment variable when constructed, so tests can
    monkeypatch the environment and build a fresh Settings().
    CLI options take precedence over these values.
    """

    state_dir: Path = _env("STATE_DIR", ".orchestrator/state", Path)
    provider_state: Path = _env("PROVIDER_STATE", ".orchestrator/provider.json", Path)
    audit_log: Path | None = field(default_factory=_optional_path)
    max_workers: int = _env("MAX_WORKERS", "4", int)
    max_attempts: int = _env("MAX_ATTEMPTS", "5", int)
    initial_backoff: float = _env("INITIAL_BACKOFF", "1.0", float)
    max_backoff: float = _env("MAX_BACKOFF", "30.0", float)
    log_format: str = _env("LOG_FORMAT", "auto")
    log_level: str = _env("LOG_LEVEL", "info")

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")
        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            errors.append("backoff values must not be negative")
        if self.log_format not in {"auto", "console", "json"}:
            errors.append(f"unknown log format {self.log_format!r}")
        if errors:
            msg = "; ".join(errors)
            raise ValueError(f"invalid settings: {msg}")
