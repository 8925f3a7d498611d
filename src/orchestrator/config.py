"""Configuration management with validation.

Invalid values are rejected at load time so that a run never starts with
a retry or polling policy that could hang or spin.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import ConfigurationError


class ReverifyPolicy(str, Enum):
    """How already-Created nodes are treated on re-application."""

    DIFF = "diff"  # Read live state and compare declared properties
    TRUST = "trust"  # Trust on sight, no provider call


# Configuration constants with documented bounds
DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_LIMIT = 10
RETRY_BACKOFF_BASE_SECONDS = 5.0

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_POLL_INTERVAL_SECONDS = 60.0
# Virtual network gateways routinely take 30-45 minutes to provision
DEFAULT_MAX_POLL_WAIT_SECONDS = 3600.0
MAX_POLL_WAIT_LIMIT_SECONDS = 4 * 3600.0

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def _get_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number: {value}") from e


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class ConvergenceConfig:
    """Retry and polling policy for the convergence engine."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_interval_seconds: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS
    max_poll_wait_seconds: float = DEFAULT_MAX_POLL_WAIT_SECONDS
    reverify_policy: ReverifyPolicy = ReverifyPolicy.DIFF

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT:
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")
        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")
        if self.poll_interval_seconds < 0:
            errors.append("POLL_INTERVAL_SECONDS cannot be negative")
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            errors.append("MAX_POLL_INTERVAL_SECONDS must be >= POLL_INTERVAL_SECONDS")
        if not 0 < self.max_poll_wait_seconds <= MAX_POLL_WAIT_LIMIT_SECONDS:
            errors.append(
                f"MAX_POLL_WAIT_SECONDS must be between 0 and {MAX_POLL_WAIT_LIMIT_SECONDS:.0f}"
            )

        if errors:
            error_msg = "Convergence configuration invalid:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> ConvergenceConfig:
        """Load configuration from environment.

        Environment Variables:
            MAX_ATTEMPTS: Create/update attempts per node (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Base of the exponential retry backoff (default: 5)
            POLL_INTERVAL_SECONDS: First poll delay while provisioning (default: 10)
            MAX_POLL_INTERVAL_SECONDS: Cap on a single poll delay (default: 60)
            MAX_POLL_WAIT_SECONDS: Cap on total polling per attempt (default: 3600)
            REVERIFY_POLICY: diff or trust (default: diff)
        """
        policy_value = os.environ.get("REVERIFY_POLICY", ReverifyPolicy.DIFF.value).lower()
        try:
            policy = ReverifyPolicy(policy_value)
        except ValueError as e:
            valid = [p.value for p in ReverifyPolicy]
            raise ConfigurationError(
                f"REVERIFY_POLICY must be one of {valid}: {policy_value}"
            ) from e

        return cls(
            max_attempts=_get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_base_seconds=_get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            poll_interval_seconds=_get_float(
                "POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS
            ),
            max_poll_interval_seconds=_get_float(
                "MAX_POLL_INTERVAL_SECONDS", DEFAULT_MAX_POLL_INTERVAL_SECONDS
            ),
            max_poll_wait_seconds=_get_float(
                "MAX_POLL_WAIT_SECONDS", DEFAULT_MAX_POLL_WAIT_SECONDS
            ),
            reverify_policy=policy,
        )


@dataclass(frozen=True)
class Config:
    """Orchestrator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    subscription_id: str
    spec_file: Path

    managed_identity_client_id: str | None = None
    enable_audit_logging: bool = True

    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.spec_file.exists():
            errors.append(f"Spec file does not exist: {self.spec_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, spec_file: Path | None = None) -> Config:
        """Load configuration from environment variables.

        Args:
            spec_file: Overrides SPEC_FILE when given (CLI --spec option).

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            SPEC_FILE: Path to the YAML gateway declaration (default: /specs/vpn-gateway.yaml)
            MANAGED_IDENTITY_CLIENT_ID: Optional user-assigned identity client ID
            ENABLE_AUDIT_LOGGING: Log a per-node audit record after each run (default: true)

        See ConvergenceConfig.from_env for the retry and polling variables.
        """
        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            spec_file=spec_file or Path(os.environ.get("SPEC_FILE", "/specs/vpn-gateway.yaml")),
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            enable_audit_logging=_get_bool("ENABLE_AUDIT_LOGGING", True),
            convergence=ConvergenceConfig.from_env(),
        )
