"""Secretless credential handling for the Azure backend.

apply and adopt authenticate with a managed identity only. Any credential
material in the environment (client secrets, certificates, passwords) makes
them refuse to build a backend; plan never needs a credential.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment."""

    def __init__(self, env_vars: list[str]) -> None:
        self.env_vars = env_vars
        super().__init__(
            f"Credential environment variables are set: {', '.join(env_vars)}. "
            "infragraph authenticates with a managed identity only; unset them and "
            "grant the identity RBAC on the target resource group."
        )


def find_credential_env_vars(environ: Mapping[str, str] | None = None) -> list[str]:
    """Return the forbidden credential variables that are set to a non-empty value."""
    env = os.environ if environ is None else environ
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if env.get(name)]


def enforce_secretless_architecture(environ: Mapping[str, str] | None = None) -> None:
    """Refuse to continue while any credential secret is in the environment.

    Args:
        environ: Environment to inspect (defaults to ``os.environ``).

    Raises:
        SecretlessViolationError: Naming every offending variable.
    """
    found = find_credential_env_vars(environ)
    if found:
        logger.critical(
            "Credential variables found in environment",
            extra={"security_event": "credential_detected", "env_vars": found},
        )
        raise SecretlessViolationError(found)


def _mask(client_id: str) -> str:
    return client_id[:8] + "..." if len(client_id) > 8 else client_id


def get_managed_identity_credential(
    client_id: str | None = None, *, environ: Mapping[str, str] | None = None
) -> ManagedIdentityCredential:
    """Build the backend credential once the environment is known to be clean.

    Args:
        client_id: Client ID of a user-assigned identity; the system-assigned
            identity is used when omitted.
        environ: Environment to inspect (defaults to ``os.environ``).

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_architecture(environ)

    identity = "user-assigned" if client_id else "system-assigned"
    logger.info(
        "Using managed identity",
        extra={"identity": identity, "client_id": _mask(client_id) if client_id else None},
    )
    if client_id:
        return ManagedIdentityCredential(client_id=client_id)
    return ManagedIdentityCredential()
