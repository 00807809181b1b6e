"""Declaration loading."""

from pathlib import Path

from cluster_orchestrator.declarations.base import DeclarationDocument, DeclarationSource
from cluster_orchestrator.declarations.directory_source import DirectoryDeclarationSource
from cluster_orchestrator.declarations.static_source import StaticDeclarationSource


def source_for_path(path: Path) -> DeclarationSource:
    """Return a directory source for directories and a file source otherwise."""
    if path.is_dir():
        return DirectoryDeclarationSource(root=path)
    return StaticDeclarationSource(path=path)


__all__ = [
    "DeclarationDocument",
    "DeclarationSource",
    "DirectoryDeclarationSource",
    "StaticDeclarationSource",
    "source_for_path",
]
