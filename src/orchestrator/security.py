"""Managed identity credentials for the Azure provider.

Only managed identity is accepted. If a service principal secret,
certificate or user password is found in the environment, the run stops
before any SDK client exists, and every offending variable is named.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Variables that would make azure-identity fall back to secret-based auth
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """A credential secret is present in the environment (exit code 2)."""

    def __init__(self, env_vars: list[str]) -> None:
        super().__init__(
            f"Credential variables set: {', '.join(env_vars)}. Unset them and give the "
            f"orchestrator a managed identity with Network Contributor on the resource group."
        )
        self.env_vars = env_vars


def detect_credential_env_vars() -> list[str]:
    """Names of forbidden variables that are set to a non-empty value."""
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if os.environ.get(name)]


def enforce_secretless_architecture() -> None:
    """Raise SecretlessViolationError if any credential secret is set."""
    detected = detect_credential_env_vars()
    if not detected:
        return
    logger.critical(
        "Secretless architecture violation",
        extra={
            "security_event": "credential_detected",
            "env_vars": detected,
            "action": "startup_blocked",
        },
    )
    raise SecretlessViolationError(detected)


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Return a ManagedIdentityCredential once the environment is verified clean.

    Args:
        client_id: Client ID of a user-assigned identity; the system-assigned
            identity is used when omitted.

    Raises:
        SecretlessViolationError: If credential variables are set.
    """
    enforce_secretless_architecture()

    if not client_id:
        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    masked = f"{client_id[:8]}..." if len(client_id) > 8 else client_id
    logger.info("Using user-assigned managed identity", extra={"client_id": masked})
    return ManagedIdentityCredential(client_id=client_id)
