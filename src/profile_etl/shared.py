"""profile_etl.shared

Shared utilities used by the batch, single-record and CLI entry points.
Includes the exception taxonomy, RejectWriter, RunCounters, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ProfileEtlError(Exception):
    """Base class for all profile_etl failures."""


class ValidationError(ProfileEtlError):
    """Raised when input cannot be used to identify or build a record."""


class AmbiguousInputError(ValidationError):
    """Raised when a patch has neither a hinted identity nor a usable email."""

    def __init__(self, message: str, headers: list[str] | None = None) -> None:
        super().__init__(message)
        self.headers = list(headers or [])


class NotFoundError(ProfileEtlError):
    """Raised when no identity matches and the caller may not create one."""


class PersistenceError(ProfileEtlError):
    """Raised when a store write fails.

    str() is deliberately generic; the driver error is kept on __cause__ and
    in the log record, never in the caller-facing message.
    """

    def __init__(self, table: str, operation: str) -> None:
        super().__init__(f"failed to persist {table}")
        self.table = table
        self.operation = operation


class PartialWriteWarning(UserWarning):
    """The legacy employee sync failed after the profile write succeeded."""

    def __init__(self, identity_id: str, step: str, reason: str) -> None:
        super().__init__(
            f"legacy_sync_failed: identity={identity_id} step={step} reason={reason}"
        )
        self.identity_id = identity_id
        self.step = step
        self.reason = reason


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_cancelled: int = 0
    db_phase_errors: int = 0
    identities_created: int = 0
    identities_matched_existing: int = 0
    profiles_upserted: int = 0
    employee_rows_replaced: int = 0
    employee_rows_synced: int = 0
    legacy_sync_failures: int = 0
    family_members_inserted: int = 0
    academic_rows_inserted: int = 0
    warnings: list[str] = field(default_factory=list)

    def absorb(self, other: "RunCounters") -> None:
        """Add another counter set (e.g. one row's) into this one."""
        for name, value in other.to_dict().items():
            if name == "warnings":
                self.warnings.extend(value)
            else:
                setattr(self, name, getattr(self, name) + value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_rejected": self.rows_rejected,
            "rows_cancelled": self.rows_cancelled,
            "db_phase_errors": self.db_phase_errors,
            "identities_created": self.identities_created,
            "identities_matched_existing": self.identities_matched_existing,
            "profiles_upserted": self.profiles_upserted,
            "employee_rows_replaced": self.employee_rows_replaced,
            "employee_rows_synced": self.employee_rows_synced,
            "legacy_sync_failures": self.legacy_sync_failures,
            "family_members_inserted": self.family_members_inserted,
            "academic_rows_inserted": self.academic_rows_inserted,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    extra: dict[str, Any] | None = None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
        **(extra or {}),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
