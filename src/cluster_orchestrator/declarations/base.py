"""
Declaration source interfaces.

Goal
Provide pluggable declaration ingestion.

Declaration sources return a DeclarationDocument: variables plus resource
declarations, which the graph builder expands.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from cluster_orchestrator.core.types import ResourceDeclaration


@dataclass
class DeclarationDocument:
    """
    Normalized declarations.

    variables are the values available to ${var.NAME} expressions.
    evidence contains structured metadata such as file names.
    """

    variables: Dict[str, Any] = field(default_factory=dict)
    declarations: List[ResourceDeclaration] = field(default_factory=list)
    evidence: Dict[str, object] = field(default_factory=dict)

    def with_variables(self, overrides: Dict[str, Any]) -> "DeclarationDocument":
        merged = dict(self.variables)
        merged.update(overrides)
        return DeclarationDocument(
            variables=merged, declarations=list(self.declarations), evidence=dict(self.evidence)
        )


class DeclarationSource(Protocol):
    """
    Declaration source interface.

    load returns the declarations and variables of the source.
    """

    def load(self) -> DeclarationDocument:
        """Load declarations."""
