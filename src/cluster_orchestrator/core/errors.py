"""
Error taxonomy.

We separate error types so callers can react correctly.
Example:
ConfigurationError should block before any provider call is made.
TransientProviderError should be retried with backoff.
PermanentProviderError should abort the affected branch only.
DriftError should be shown to the operator as part of a plan.

Every error carries the address of the resource instance it belongs to,
when one applies.
"""

from __future__ import annotations

from typing import Sequence


class OrchestratorError(Exception):
    """Base class for all orchestrator exceptions."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.address = address

    def __str__(self) -> str:
        if self.address:
            return f"{self.address}: {self.message}"
        return self.message


class ConfigurationError(OrchestratorError):
    """Raised when declarations are invalid. Always raised before any provider call."""


class CyclicDependencyError(ConfigurationError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle)
        super().__init__(
            f"dependency cycle detected: {path}", address=self.cycle[0] if self.cycle else None
        )


class UnresolvedReferenceError(ConfigurationError):
    """Raised when a declaration references a missing resource, key, variable or attribute."""


class PlanConflictError(ConfigurationError):
    """Raised when two declarations claim the same resource identity."""


class ProviderError(OrchestratorError):
    """Base class for errors reported by a provider call."""


class TransientProviderError(ProviderError):
    """Rate limiting or a network blip. Retried with backoff."""


class PermanentProviderError(ProviderError):
    """Authorization failure, invalid attribute value or quota exceeded. Not retried."""


class DriftError(OrchestratorError):
    """
    Recorded state disagrees with live provider state.

    Drift is never raised during planning. It is attached to the plan so the
    operator sees the correction the plan will make.
    """

    def __init__(
        self,
        message: str,
        address: str,
        recorded: dict | None = None,
        live: dict | None = None,
    ) -> None:
        super().__init__(message, address=address)
        self.recorded = recorded
        self.live = live


class PolicyRejected(OrchestratorError):
    """Raised when the guard blocks a plan."""


class ExecutionFailed(OrchestratorError):
    """
    Raised when an apply finished with failed, skipped or cancelled operations.

    failures maps operation ids to the error that failed them.
    result is the full apply outcome, when one exists.
    """

    def __init__(
        self,
        message: str,
        failures: dict[str, Exception],
        result: object | None = None,
    ) -> None:
        super().__init__(message)
        self.failures = failures
        self.result = result
