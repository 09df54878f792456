"""Configuration management with validation.

Bounds are enforced at load time so a bad environment fails before any
declaration is read or any backend call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_DECLARATIONS_FILE = "declarations.yaml"
DEFAULT_STATE_FILE = ".infragraph/state.json"

DEFAULT_MAX_PARALLELISM = 4
MIN_MAX_PARALLELISM = 1
MAX_MAX_PARALLELISM = 32

DEFAULT_MAX_APPLY_ATTEMPTS = 3
MAX_APPLY_ATTEMPTS_LIMIT = 10

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 5.0
MAX_RETRY_BACKOFF_BASE_SECONDS = 300.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
MAX_OPERATION_TIMEOUT_SECONDS = 7200

# Input size limits
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per declaration file
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024  # 16MB state document
MAX_INCLUDE_DEPTH = 8
MAX_RESOURCES_PER_DECLARATION_SET = 500
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Input validation patterns
VALID_RESOURCE_ID_PATTERN = r"^[a-z][a-z0-9_-]{0,62}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Backend-facing fields
    (subscription, resource group, location) are optional here because
    ``plan`` never talks to the backend; ``validate_for_apply`` checks them.
    """

    # Paths
    declarations_path: Path = field(default_factory=lambda: Path(DEFAULT_DECLARATIONS_FILE))
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    # Azure target
    subscription_id: str | None = None
    resource_group_name: str | None = None
    location: str | None = None
    managed_identity_client_id: str | None = None

    # Execution
    max_parallelism: int = DEFAULT_MAX_PARALLELISM
    max_attempts: int = DEFAULT_MAX_APPLY_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Audit
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if (
            self.resource_group_name
            and len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH
        ):
            errors.append(
                f"AZURE_RESOURCE_GROUP exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )

        if not (MIN_MAX_PARALLELISM <= self.max_parallelism <= MAX_MAX_PARALLELISM):
            errors.append(
                f"MAX_PARALLELISM must be between {MIN_MAX_PARALLELISM} "
                f"and {MAX_MAX_PARALLELISM}"
            )

        if not (1 <= self.max_attempts <= MAX_APPLY_ATTEMPTS_LIMIT):
            errors.append(f"MAX_APPLY_ATTEMPTS must be between 1 and {MAX_APPLY_ATTEMPTS_LIMIT}")

        if not (0 <= self.retry_backoff_base_seconds <= MAX_RETRY_BACKOFF_BASE_SECONDS):
            errors.append(
                f"RETRY_BACKOFF_BASE must be between 0 and {MAX_RETRY_BACKOFF_BASE_SECONDS} seconds"
            )

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"OPERATION_TIMEOUT must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def validate_for_apply(self) -> None:
        """Check the fields a backend connection needs.

        Raises:
            ConfigurationError: If any backend-facing field is missing.
        """
        errors: list[str] = []
        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        if not self.resource_group_name:
            errors.append("AZURE_RESOURCE_GROUP is required")
        if not self.location:
            errors.append("AZURE_LOCATION is required")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DECLARATIONS_FILE: Path to the declaration YAML (default: declarations.yaml)
            STATE_FILE: Path to the JSON state document (default: .infragraph/state.json)
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_RESOURCE_GROUP: Target resource group
            AZURE_LOCATION: Default resource location
            AZURE_CLIENT_ID: Optional user-assigned managed identity client ID
            MAX_PARALLELISM: Concurrent backend calls (default: 4)
            MAX_APPLY_ATTEMPTS: Attempts per backend call (default: 3)
            RETRY_BACKOFF_BASE: Backoff base in seconds (default: 5)
            OPERATION_TIMEOUT: Timeout per backend call in seconds (default: 1800)
            ENABLE_AUDIT_LOGGING: Emit provenance records (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            declarations_path=Path(
                os.environ.get("DECLARATIONS_FILE", DEFAULT_DECLARATIONS_FILE)
            ),
            state_path=Path(os.environ.get("STATE_FILE", DEFAULT_STATE_FILE)),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            resource_group_name=os.environ.get("AZURE_RESOURCE_GROUP") or None,
            location=os.environ.get("AZURE_LOCATION") or None,
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            max_parallelism=get_int("MAX_PARALLELISM", DEFAULT_MAX_PARALLELISM),
            max_attempts=get_int("MAX_APPLY_ATTEMPTS", DEFAULT_MAX_APPLY_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
