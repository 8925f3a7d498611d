"""Error taxonomy for the provisioning orchestrator.

Configuration errors are detected before any provider call and are never
retried. Provider errors are split into transient (retried with backoff)
and permanent (surfaced immediately). Both end up wrapped in a
ProvisioningFailure once a node gives up.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    pass


# =============================================================================
# Configuration errors (detected before any provider call)
# =============================================================================


class ConfigurationError(OrchestratorError):
    """Raised when the declared graph or the runtime configuration is invalid."""

    pass


class DuplicateKeyError(ConfigurationError):
    """Raised when a (kind, key) pair is declared twice."""

    pass


class InvalidReferenceError(ConfigurationError):
    """Raised when a reference targets a node that does not exist."""

    pass


class CyclicDependencyError(ConfigurationError):
    """Raised when references form a cycle."""

    pass


class GraphFrozenError(ConfigurationError):
    """Raised when topology is modified after finalization."""

    pass


class SpecLoadError(ConfigurationError):
    """Raised when the declarative document cannot be loaded or validated."""

    pass


class UnresolvedReferenceError(OrchestratorError):
    """Raised when a reference is resolved before its target is Created."""

    pass


# =============================================================================
# Provider errors
# =============================================================================


class ProviderError(OrchestratorError):
    """Base class for errors reported by the cloud provider."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientProviderError(ProviderError):
    """Timeout, rate limiting or a conflicting concurrent modification."""

    pass


class PermanentProviderError(ProviderError):
    """Invalid property value, quota exceeded or a naming collision."""

    pass


# =============================================================================
# Run-level errors
# =============================================================================


class ProvisioningFailure(OrchestratorError):
    """A node gave up: permanent error, or transient retries exhausted."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause

    @property
    def cause_kind(self) -> str:
        """Name of the underlying error class."""
        if self.cause is None:
            return type(self).__name__
        return type(self.cause).__name__


class ProvisioningCancelled(OrchestratorError):
    """Polling was stopped by an abort request or the total wait cap."""

    pass


class IncompleteGraphError(OrchestratorError):
    """Raised when outputs are requested from a graph that has not converged."""

    def __init__(self, unresolved: list[str]) -> None:
        super().__init__(f"Graph has not converged; unresolved nodes: {unresolved}")
        self.unresolved = unresolved
