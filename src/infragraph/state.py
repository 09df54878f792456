"""State recording for idempotent re-apply.

The state recorder is the only long-lived, mutable structure: one
ApplyRecord per resource id. Planning only reads it. The executor commits a
record with ``put`` after a confirmed successful backend operation, and may
flip the status to pending/failed around attempts without touching the
committed hash and outputs.

The file recorder writes the whole document to a temp file in the same
directory and renames it over the old one, so a crash never leaves a
half-written state file behind.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import ApplyRecord, ApplyStatus, ResourceKind

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when state cannot be read or written."""

    pass


class StateRecorder(ABC):
    """Per-resource apply records keyed by resource id."""

    @abstractmethod
    def get(self, resource_id: str) -> ApplyRecord | None:
        """Return the record for ``resource_id`` if one exists."""

    @abstractmethod
    def all(self) -> dict[str, ApplyRecord]:
        """Return a snapshot of all records."""

    @abstractmethod
    def delete(self, resource_id: str) -> bool:
        """Remove a record. Returns True if one was removed."""

    @abstractmethod
    def _store(self, resource_id: str, record: ApplyRecord) -> None:
        """Persist one record atomically."""

    def put(self, resource_id: str, record: ApplyRecord) -> None:
        """Commit the record of a successful apply.

        Raises:
            ValueError: If the record is not a committed success for this id.
        """
        if record.resource_id != resource_id:
            raise ValueError(
                f"Record for '{record.resource_id}' cannot be stored under '{resource_id}'"
            )
        if record.status != ApplyStatus.SUCCEEDED or not record.is_committed:
            raise ValueError(f"Only committed successful applies can be put: {resource_id}")
        self._store(resource_id, record)
        logger.info(
            "Apply record committed",
            extra={
                "resource_id": resource_id,
                "external_id": record.external_id,
                "parameter_hash": record.parameter_hash,
            },
        )

    def mark_pending(self, resource_id: str, kind: ResourceKind) -> None:
        """Flag that a backend operation for ``resource_id`` is in flight."""
        self._store(resource_id, self._with_status(resource_id, kind, ApplyStatus.PENDING, None))

    def mark_failed(self, resource_id: str, kind: ResourceKind, error: str) -> None:
        """Flag the last backend operation for ``resource_id`` as failed."""
        self._store(resource_id, self._with_status(resource_id, kind, ApplyStatus.FAILED, error))
        logger.warning(
            "Resource marked failed",
            extra={"resource_id": resource_id, "error": error},
        )

    def _with_status(
        self,
        resource_id: str,
        kind: ResourceKind,
        status: ApplyStatus,
        error: str | None,
    ) -> ApplyRecord:
        current = self.get(resource_id)
        now = datetime.now(UTC)
        if current is None:
            return ApplyRecord(
                resource_id=resource_id,
                kind=kind,
                status=status,
                error=error,
                updated_at=now,
            )
        # Committed hash, outputs and external id are left untouched
        return current.model_copy(update={"status": status, "error": error, "updated_at": now})


class InMemoryStateRecorder(StateRecorder):
    """Non-durable recorder for tests and embedding."""

    def __init__(self, records: dict[str, ApplyRecord] | None = None) -> None:
        self._records: dict[str, ApplyRecord] = dict(records or {})
        self._lock = threading.Lock()

    def get(self, resource_id: str) -> ApplyRecord | None:
        with self._lock:
            return self._records.get(resource_id)

    def all(self) -> dict[str, ApplyRecord]:
        with self._lock:
            return dict(self._records)

    def delete(self, resource_id: str) -> bool:
        with self._lock:
            return self._records.pop(resource_id, None) is not None

    def _store(self, resource_id: str, record: ApplyRecord) -> None:
        with self._lock:
            self._records[resource_id] = record


class FileStateRecorder(StateRecorder):
    """Durable recorder backed by a single JSON document.

    Document format::

        {"version": 1, "records": {"<resource-id>": {...ApplyRecord...}}}
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._records: dict[str, ApplyRecord] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def get(self, resource_id: str) -> ApplyRecord | None:
        with self._lock:
            return self._load().get(resource_id)

    def all(self) -> dict[str, ApplyRecord]:
        with self._lock:
            return dict(self._load())

    def delete(self, resource_id: str) -> bool:
        with self._lock:
            records = dict(self._load())
            if records.pop(resource_id, None) is None:
                return False
            self._flush(records)
            return True

    def _store(self, resource_id: str, record: ApplyRecord) -> None:
        with self._lock:
            records = dict(self._load())
            records[resource_id] = record
            self._flush(records)

    def _load(self) -> dict[str, ApplyRecord]:
        """Load the document once; callers hold the lock."""
        if self._records is not None:
            return self._records

        if not self._path.exists():
            logger.info("No state file yet, starting empty", extra={"path": str(self._path)})
            self._records = {}
            return self._records

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(document, dict) or not isinstance(document.get("records"), dict):
            raise StateStoreError(f"State file must contain a 'records' mapping: {self._path}")

        version = document.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state format version {version!r} in {self._path}"
            )

        records: dict[str, ApplyRecord] = {}
        for resource_id, raw in document["records"].items():
            try:
                records[resource_id] = ApplyRecord.model_validate(raw)
            except ValidationError as e:
                raise StateStoreError(
                    f"Invalid record for '{resource_id}' in {self._path}: {e}"
                ) from e

        logger.debug(
            "Loaded state",
            extra={"path": str(self._path), "record_count": len(records)},
        )
        self._records = records
        return self._records

    def _flush(self, records: dict[str, ApplyRecord]) -> None:
        """Write the document via temp file + rename; callers hold the lock."""
        document = {
            "version": STATE_FORMAT_VERSION,
            "records": {rid: records[rid].to_json_dict() for rid in sorted(records)},
        }

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
        except OSError as e:
            raise StateStoreError(f"Failed to prepare state write for {self._path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

        self._records = records
