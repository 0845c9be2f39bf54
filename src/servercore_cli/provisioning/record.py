"""Durable execution record.

The record maps step ids to their last known outcome and is saved after
every step transition, so a crash loses at most the in-flight step. The
file format is forgiving: unknown fields are ignored and missing fields
fall back to defaults (a step without a status is pending).

File format (JSON):

    {
      "version": 1,
      "identity": "cloud.example.net",
      "steps": {
        "install_base_packages": {
          "status": "succeeded",
          "timestamp": "2026-10-18T12:00:00+00:00",
          "attempts": 1,
          "last_error": null,
          "error_kind": null
        }
      }
    }
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import PersistError, RecordCorruptError
from ..shared.files import atomic_write
from ..shared.logging import get_logger

logger = get_logger(__name__)

RECORD_VERSION = 1


class StepStatus(Enum):
    """Persisted state of a step."""

    PENDING = "pending"
    RUNNING = "running"  # In flight, or the process died while applying
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # A dependency did not succeed


@dataclass
class StepRecord:
    """Last known outcome of one step."""

    status: StepStatus = StepStatus.PENDING
    last_error: str | None = None
    error_kind: str | None = None
    timestamp: str | None = None
    attempts: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> StepRecord:
        if not isinstance(data, dict):
            return cls()
        try:
            status = StepStatus(data.get("status", StepStatus.PENDING.value))
        except ValueError:
            status = StepStatus.PENDING
        attempts = data.get("attempts", 0)
        return cls(
            status=status,
            last_error=data.get("last_error"),
            error_kind=data.get("error_kind"),
            timestamp=data.get("timestamp"),
            attempts=attempts if isinstance(attempts, int) else 0,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ExecutionRecord:
    """Step id -> StepRecord, optionally backed by a file."""

    def __init__(self, identity: str, path: Path | None = None):
        self.identity = identity
        self.path = path
        self._steps: dict[str, StepRecord] = {}

    @classmethod
    def load(cls, identity: str, path: Path) -> ExecutionRecord:
        """Load the record of an identity, or start empty.

        Raises:
            RecordCorruptError: The file exists but is not a valid record.
        """
        record = cls(identity, path)
        if not path.exists():
            return record

        try:
            data = json.loads(path.read_text())
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RecordCorruptError(
                message=f"Cannot parse execution record {path}: {e}", path=str(path)
            ) from e
        if not isinstance(data, dict) or not isinstance(data.get("steps", {}), dict):
            raise RecordCorruptError(
                message=f"Execution record {path} has an unexpected layout", path=str(path)
            )

        stored_identity = data.get("identity")
        if stored_identity and stored_identity != identity:
            raise RecordCorruptError(
                message=f"Execution record {path} belongs to {stored_identity!r}, not {identity!r}",
                path=str(path),
            )

        for step_id, entry in data.get("steps", {}).items():
            record._steps[str(step_id)] = StepRecord.from_dict(entry)
        logger.debug("record.loaded", path=str(path), steps=len(record._steps))
        return record

    def get(self, step_id: str) -> StepRecord:
        return self._steps.get(step_id, StepRecord())

    def status(self, step_id: str) -> StepStatus:
        return self.get(step_id).status

    def succeeded(self, step_id: str) -> bool:
        return self.status(step_id) == StepStatus.SUCCEEDED

    def items(self) -> list[tuple[str, StepRecord]]:
        return list(self._steps.items())

    def mark(
        self,
        step_id: str,
        status: StepStatus,
        error: str | None = None,
        error_kind: str | None = None,
        attempts: int | None = None,
    ) -> StepRecord:
        """Update one step and stamp it with the current time."""
        previous = self.get(step_id)
        entry = StepRecord(
            status=status,
            last_error=error,
            error_kind=error_kind,
            timestamp=_now(),
            attempts=previous.attempts if attempts is None else attempts,
        )
        self._steps[step_id] = entry
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": RECORD_VERSION,
            "identity": self.identity,
            "steps": {step_id: entry.to_dict() for step_id, entry in self._steps.items()},
        }

    def save(self) -> None:
        """Persist atomically. A record without a path lives in memory only.

        Raises:
            PersistError: The file could not be written.
        """
        if self.path is None:
            return
        payload = json.dumps(self.to_dict(), indent=2, sort_keys=True).encode() + b"\n"
        try:
            atomic_write(self.path, payload, mode=0o600)
        except OSError as e:
            raise PersistError(
                message=f"Cannot write execution record {self.path}: {e}", path=str(self.path)
            ) from e
