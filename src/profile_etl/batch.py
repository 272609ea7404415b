"""profile_etl.batch

Batch import: drive mapper -> identity resolver -> merge executor for every
row of an uploaded spreadsheet, isolating failures to the row that caused
them.

Guarantees:
  - N input rows -> exactly N RowResults, results[i] describes rows[i]
  - a failing row never changes another row's outcome
  - summary counts are computed from the result list, never tracked apart
  - rows not started before the deadline are reported as cancelled

Rows may be spread over a bounded thread pool (max_workers > 1) when the
store supports it.  Rows sharing an email are kept on one lane and applied
in input order; results are reassembled by index before returning.
"""

from __future__ import annotations

import csv
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from profile_etl.aliases import (
    RAW_PASSTHROUGH_KEY,
    AliasConfig,
    default_alias_config,
    resolve,
)
from profile_etl.identity import resolve_identity
from profile_etl.mapper import map_extracted_to_patch, map_raw_to_employee_row
from profile_etl.merge import IdentityLocks, merge_profile
from profile_etl.models import ProfilePatch
from profile_etl.normalize import trim
from profile_etl.shared import ProfileEtlError, RunCounters, ValidationError
from profile_etl.store import ProfileStore

log = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

SUCCESS_MESSAGE = "Profile created/updated successfully"
CANCELLED_MESSAGE = "Cancelled: batch deadline expired before this row was processed"
UNEXPECTED_ERROR_MESSAGE = "Unexpected error while processing row"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RowResult:
    index: int
    success: bool
    status: str
    email: str | None = None
    name: str | None = None
    identity_id: str | None = None
    created: bool = False
    message: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "row": self.index,
            "success": self.success,
            "status": self.status,
            "email": self.email,
            "name": self.name,
        }
        if self.success:
            out["message"] = self.message
            out["identity_id"] = self.identity_id
            out["created"] = self.created
        else:
            out["error"] = self.error
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out


@dataclass
class BatchReport:
    results: list[RowResult]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def cancelled(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_CANCELLED)

    @property
    def message(self) -> str:
        return (
            f"Batch upload completed. {self.successful} successful, "
            f"{self.failed} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "message": self.message,
            "results": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------------
# Row preparation
# ---------------------------------------------------------------------------

@dataclass
class _PreparedRow:
    index: int
    raw: Mapping[str, Any]
    email: str | None
    name: str | None
    patch: ProfilePatch | None = None
    error: ProfileEtlError | None = None

    @property
    def lane_key(self) -> str:
        if self.patch is not None:
            email = self.patch.email or self.patch.personal_email
            if email:
                return f"email:{email}"
        return f"row:{self.index}"


def _prepare(index: int, raw: Mapping[str, Any], config: AliasConfig) -> _PreparedRow:
    email = trim(resolve(raw, config.email_aliases))
    name = trim(resolve(raw, config.profile_fields.get("full_name", ())))
    prepared = _PreparedRow(index=index, raw=raw, email=email, name=name)
    try:
        prepared.patch = map_extracted_to_patch(raw, config)
    except ValidationError as exc:
        prepared.error = exc
    return prepared


def _lanes(prepared: list[_PreparedRow]) -> list[list[_PreparedRow]]:
    lanes: dict[str, list[_PreparedRow]] = {}
    for row in prepared:
        lanes.setdefault(row.lane_key, []).append(row)
    return list(lanes.values())


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

def _process_row(
    store: ProfileStore,
    row: _PreparedRow,
    privileged: bool,
    config: AliasConfig,
    legacy_sync: str,
    locks: IdentityLocks,
    counters: RunCounters,
) -> RowResult:
    result = RowResult(
        index=row.index, success=False, status=STATUS_FAILED,
        email=row.email, name=row.name,
    )
    attempt = RunCounters()
    try:
        if row.error is not None:
            raise row.error
        with store.transaction():
            resolution = resolve_identity(
                store, row.patch, privileged=privileged, config=config
            )
            outcome = merge_profile(
                store,
                resolution.identity_id,
                row.patch,
                legacy_row=map_raw_to_employee_row(row.raw, config),
                legacy_sync=legacy_sync,
                locks=locks,
                counters=attempt,
            )
    except ProfileEtlError as exc:
        log.warning("Row %d failed: %s", row.index, exc)
        counters.rows_rejected += 1
        result.error = str(exc)
        return result
    except Exception:
        log.exception("Row %d failed with an unexpected error", row.index)
        counters.rows_rejected += 1
        counters.db_phase_errors += 1
        result.error = UNEXPECTED_ERROR_MESSAGE
        return result

    counters.absorb(attempt)
    if resolution.created:
        counters.identities_created += 1
    else:
        counters.identities_matched_existing += 1
    result.success = True
    result.status = STATUS_OK
    result.identity_id = resolution.identity_id
    result.created = resolution.created
    result.message = SUCCESS_MESSAGE
    result.warnings = [str(w) for w in outcome.warnings]
    return result


def _cancelled(row: _PreparedRow, counters: RunCounters) -> RowResult:
    counters.rows_cancelled += 1
    return RowResult(
        index=row.index, success=False, status=STATUS_CANCELLED,
        email=row.email, name=row.name, error=CANCELLED_MESSAGE,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def import_batch(
    store: ProfileStore,
    rows: Iterable[Mapping[str, Any]],
    privileged: bool = True,
    config: AliasConfig | None = None,
    legacy_sync: str = "best_effort",
    max_workers: int = 1,
    deadline_seconds: float | None = None,
    clock: Callable[[], float] = time.monotonic,
    counters: RunCounters | None = None,
    locks: IdentityLocks | None = None,
) -> BatchReport:
    """Import every row; never raises for a single row's failure.

    Raises:
        ValidationError: the batch has no rows at all.
    """
    rows = list(rows)
    if not rows:
        raise ValidationError(
            "The uploaded file does not contain any valid profile data. Please "
            "ensure the file has data rows with at least an email or name."
        )
    config = config or default_alias_config()
    counters = counters if counters is not None else RunCounters()
    locks = locks if locks is not None else IdentityLocks()
    deadline = clock() + deadline_seconds if deadline_seconds is not None else None

    prepared = [_prepare(i, raw, config) for i, raw in enumerate(rows)]
    results: list[RowResult | None] = [None] * len(prepared)
    row_counters = [RunCounters() for _ in prepared]

    def run_lane(lane: list[_PreparedRow]) -> None:
        for row in lane:
            if deadline is not None and clock() >= deadline:
                results[row.index] = _cancelled(row, row_counters[row.index])
                continue
            results[row.index] = _process_row(
                store, row, privileged, config, legacy_sync, locks,
                row_counters[row.index],
            )

    workers = max(1, max_workers)
    if workers > 1 and not store.supports_concurrency:
        log.warning(
            "%s does not support concurrent writers; processing rows sequentially",
            type(store).__name__,
        )
        workers = 1

    if workers == 1:
        run_lane(prepared)
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(run_lane, lane) for lane in _lanes(prepared)]
            for future in futures:
                future.result()

    counters.rows_read += len(prepared)
    for c in row_counters:
        counters.absorb(c)

    report = BatchReport(results=[r for r in results if r is not None])
    log.info(
        "Batch finished: total=%d successful=%d failed=%d cancelled=%d",
        report.total, report.successful, report.failed, report.cancelled,
    )
    return report


# ---------------------------------------------------------------------------
# CSV reader
# ---------------------------------------------------------------------------

def read_batch_csv(path: Path) -> list[dict[str, Any]]:
    """Read a spreadsheet export into raw records.

    Header keys are kept verbatim (the alias resolver handles spacing and
    case); fully blank rows are skipped; each record carries a ``_raw``
    copy of the row for diagnostics.
    """
    records: list[dict[str, Any]] = []
    with Path(path).open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        for raw_row in reader:
            row = {k: v for k, v in raw_row.items() if k is not None}
            if not any(trim(v) for v in row.values()):
                continue
            record: dict[str, Any] = dict(row)
            record[RAW_PASSTHROUGH_KEY] = dict(row)
            records.append(record)
    return records
