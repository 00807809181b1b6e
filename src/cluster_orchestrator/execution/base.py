"""
Execution interfaces.

Goal
Define stable interfaces for plan execution without binding the engine to a
specific cloud API.

Design notes
A Provider handles create, read, update and delete for one or more resource
types. Providers report failures with TransientProviderError, which the
executor retries, or PermanentProviderError, which aborts the branch.
Any other exception is treated as permanent.

Every call returns the full provider side attribute set, inputs and computed
outputs together, so the executor can record and publish it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from cluster_orchestrator.core.errors import PermanentProviderError
from cluster_orchestrator.core.types import ResourceAddress, StateRecord


@dataclass(frozen=True)
class ProviderResult:
    """
    Result of a provider call.

    resource_id
    Provider assigned identifier.

    attributes
    Inputs plus computed outputs such as endpoint or credentials.
    """

    resource_id: str
    attributes: Dict[str, Any]


class Provider(Protocol):
    """
    Minimal provider interface.

    Real implementations wrap a cloud SDK.
    We keep the interface narrow for testability.
    """

    def create(self, address: ResourceAddress, attributes: Dict[str, Any]) -> ProviderResult:
        """Create a resource from fully resolved attributes."""

    def read(
        self,
        address: ResourceAddress,
        record: Optional[StateRecord],
    ) -> Optional[ProviderResult]:
        """
        Read live state.

        record is None when the orchestrator lost track of the resource, for
        example after an interrupted create. The provider should then look
        the resource up by its identity. Return None when it does not exist.
        """

    def update(
        self,
        address: ResourceAddress,
        record: StateRecord,
        attributes: Dict[str, Any],
    ) -> ProviderResult:
        """Update a resource in place."""

    def delete(self, address: ResourceAddress, record: StateRecord) -> None:
        """Delete a resource. Deleting an absent resource is not an error."""


@dataclass
class ProviderRegistry:
    """
    Map resource types to providers.

    default
    Used for types without an explicit registration.
    """

    default: Optional[Provider] = None
    _providers: Dict[str, Provider] = field(default_factory=dict)

    def register(self, resource_type: str, provider: Provider) -> None:
        self._providers[resource_type] = provider

    def for_type(self, resource_type: str) -> Provider:
        provider = self._providers.get(resource_type, self.default)
        if provider is None:
            raise PermanentProviderError(
                f"no provider registered for resource type {resource_type!r}"
            )
        return provider


@dataclass(frozen=True)
class ExecutorConfig:
    """
    Executor configuration.

    max_workers
    Upper bound on provider calls running at the same time.

    max_attempts
    Attempts per operation for transient errors, the first call included.

    initial_backoff, multiplier, max_backoff
    Delay before retry n is initial_backoff * multiplier ** (n - 1),
    capped at max_backoff.
    """

    max_workers: int = 4
    max_attempts: int = 5
    initial_backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 30.0

    def backoffs(self) -> List[float]:
        """Return the delays between attempts. One fewer than max_attempts."""
        return [
            min(self.initial_backoff * self.multiplier**n, self.max_backoff)
            for n in range(max(self.max_attempts - 1, 0))
        ]
