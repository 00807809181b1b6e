"""
Directory declaration source.

Reads every *.yaml, *.yml and *.json file in a directory, in file name order,
and merges them into one document. A variable or a resource declared in more
than one file is a configuration error rather than a silent override.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from cluster_orchestrator.core.errors import ConfigurationError, PlanConflictError
from cluster_orchestrator.declarations.base import DeclarationDocument, DeclarationSource
from cluster_orchestrator.declarations.static_source import StaticDeclarationSource

_SUFFIXES = {".yaml", ".yml", ".json"}


@dataclass(frozen=True)
class DirectoryDeclarationSource(DeclarationSource):
    """Load declarations from all declaration files inside a directory."""

    root: Path

    def load(self) -> DeclarationDocument:
        if not self.root.is_dir():
            raise ConfigurationError(f"{self.root}: not a directory")

        merged = DeclarationDocument()
        files = []
        seen: dict[str, str] = {}

        for p in sorted(self.root.iterdir()):
            if p.suffix not in _SUFFIXES or not p.is_file():
                continue
            files.append(p.name)
            doc = StaticDeclarationSource(path=p).load()

            for name, value in doc.variables.items():
                if name in merged.variables:
                    raise ConfigurationError(f"variable {name!r} declared in more than one file")
                merged.variables[name] = value

            for decl in doc.declarations:
                if decl.label in seen:
                    raise PlanConflictError(
                        f"declared in {seen[decl.label]} and {p.name}", address=decl.label
                    )
                seen[decl.label] = p.name
                merged.declarations.append(decl)

        merged.evidence = {"source": str(self.root), "files": files}
        return merged
