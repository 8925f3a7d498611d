"""Narrow provider interface consumed by the convergence engine.

The engine never talks to a cloud SDK directly. A provider exposes three
calls, all idempotent under retry for the same logical name:

- create_or_update(kind, name, payload) -> ProviderResponse
- get(kind, name) -> LiveResource | None (None means NotFound)
- delete(kind, name) -> OperationStatus

Errors are either raised as TransientProviderError / PermanentProviderError
or returned inside a FAILED ProviderResponse.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ProviderError
from .graph import ProviderHandle, ResourceKind


class OperationStatus(str, Enum):
    """Status of a provider operation."""

    ACCEPTED = "Accepted"  # Still provisioning, poll get() for the outcome
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class ProvisioningState(str, Enum):
    """ARM provisioning states reported on live resources."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELED = "Canceled"
    UPDATING = "Updating"
    CREATING = "Creating"
    DELETING = "Deleting"

    @property
    def terminal(self) -> bool:
        return self in (
            ProvisioningState.SUCCEEDED,
            ProvisioningState.FAILED,
            ProvisioningState.CANCELED,
        )


@dataclass(frozen=True)
class ProviderResponse:
    """Result of a create_or_update call."""

    status: OperationStatus
    handle: ProviderHandle | None = None
    error: ProviderError | None = None


@dataclass(frozen=True)
class LiveResource:
    """Live state of a resource as reported by the provider."""

    handle: ProviderHandle
    properties: Mapping[str, Any] = field(default_factory=dict)
    provisioning_state: ProvisioningState = ProvisioningState.SUCCEEDED
    # Set by providers when a terminal Failed state carries error detail
    error: ProviderError | None = None


class Provider(ABC):
    """Capability set the engine and validator need from a cloud provider."""

    @abstractmethod
    async def create_or_update(
        self, kind: ResourceKind, name: str, payload: Mapping[str, Any]
    ) -> ProviderResponse:
        """Create or update a resource from a rendered payload."""

    @abstractmethod
    async def get(self, kind: ResourceKind, name: str) -> LiveResource | None:
        """Read a resource; None when it does not exist."""

    @abstractmethod
    async def delete(self, kind: ResourceKind, name: str) -> OperationStatus:
        """Delete a resource; ACCEPTED when deletion continues asynchronously."""
