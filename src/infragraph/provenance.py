"""Run provenance for audit.

Every plan/apply run is stamped with one structured record that answers:
- "Which declarations were applied, from which commit?"
- "What did the run decide and what actually happened?"
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
INFRAGRAPH_VERSION = os.environ.get("INFRAGRAPH_VERSION", "dev")


@dataclass
class RunProvenance:
    """Provenance record for one run."""

    command: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    version: str = INFRAGRAPH_VERSION

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    declarations_path: str = ""
    declarations_hash: str = ""  # SHA256 of the root declaration file

    # Target
    subscription_id: str = ""
    resource_group_name: str = ""

    # Outcome
    plan_summary: dict[str, int] = field(default_factory=dict)
    outcome_summary: dict[str, int] = field(default_factory=dict)
    failed_resources: list[str] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def record_error(self, error: BaseException) -> None:
        self.error = str(error)
        self.error_type = type(error).__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_declarations(path: Path) -> str:
    """SHA-256 of a declaration file, or empty if it cannot be read."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        logger.debug("Declarations not readable for hashing", extra={"path": str(path)})
        return ""


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")

    def create_provenance(
        self,
        command: str,
        declarations_path: Path,
        subscription_id: str | None = None,
        resource_group_name: str | None = None,
    ) -> RunProvenance:
        """Create a new provenance record for a run.

        Args:
            command: CLI command being run (plan, apply, adopt).
            declarations_path: Root declaration file.
            subscription_id: Target subscription, if configured.
            resource_group_name: Target resource group, if configured.
        """
        return RunProvenance(
            command=command,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            declarations_path=str(declarations_path),
            declarations_hash=hash_declarations(declarations_path),
            subscription_id=subscription_id or "",
            resource_group_name=resource_group_name or "",
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        Args:
            provenance: Completed provenance record.
        """
        log_level = logging.INFO
        if provenance.error or provenance.failed_resources:
            log_level = logging.ERROR
        elif provenance.cancelled:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "command": provenance.command,
                "git_commit": provenance.git_commit_sha,
                "declarations_hash": provenance.declarations_hash,
                "failed_resources": provenance.failed_resources,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
