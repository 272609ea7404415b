"""profile_etl.merge

Merge-upsert of a ProfilePatch into the stored profile and legacy employee
row for one identity.

One call = one store transaction:
  1. users.full_name updated when the patch carries a name
  2. profiles upserted with per-column COALESCE(new, old)
  3. employee_family_members / employee_academic_info replaced when the
     patch supplies family_details / education
  4. legacy employee write, inside a nested savepoint:
       single-record saves -> COALESCE sync of the mirrored columns
       spreadsheet rows    -> delete-then-insert of the full legacy row
     Under the "best_effort" policy a failure here rolls back only the
     savepoint and is reported as a PartialWriteWarning; under "strict" it
     aborts the whole record.

Merges on the same identity are serialized through IdentityLocks.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from profile_etl.models import (
    LEGACY_SYNC_COLUMNS,
    EducationEntry,
    FamilyMember,
    MergeOutcome,
    ProfilePatch,
)
from profile_etl.normalize import trim
from profile_etl.shared import PartialWriteWarning, PersistenceError, RunCounters
from profile_etl.store import ProfileStore

log = logging.getLogger(__name__)

LEGACY_SYNC_POLICIES = ("best_effort", "strict")


# ---------------------------------------------------------------------------
# Per-identity locking
# ---------------------------------------------------------------------------

class IdentityLocks:
    """Registry of one lock per identity id.

    An entry lives only while some caller holds or waits on it, so the
    registry stays as small as the set of identities in flight.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, identity_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(identity_id, threading.Lock())
            self._users[identity_id] = self._users.get(identity_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[identity_id] -= 1
                if not self._users[identity_id]:
                    del self._users[identity_id]
                    del self._locks[identity_id]


_default_locks = IdentityLocks()


# ---------------------------------------------------------------------------
# Child-table projections
# ---------------------------------------------------------------------------

def family_member_rows(members: list[FamilyMember]) -> list[dict[str, Any]]:
    return [
        {
            "member_type": trim(m.relation) or "Family",
            "member_name": trim(m.name),
            "contact": trim(m.contact),
            "relation": trim(m.relation),
            "occupation": trim(m.occupation),
            "age": trim(m.age),
        }
        for m in members
    ]


def academic_rows(entries: list[EducationEntry]) -> list[dict[str, Any]]:
    return [
        {
            "qualification": trim(e.degree),
            "institution_name": trim(e.college),
            "passout_year": trim(e.passout_year),
            "grade_percentage": trim(e.grade),
        }
        for e in entries
    ]


def legacy_sync_values(profile_values: dict[str, Any]) -> dict[str, Any]:
    """Mirrored legacy columns for the canonical fields present in a patch."""
    return {
        legacy: profile_values[canonical]
        for canonical, legacy in LEGACY_SYNC_COLUMNS.items()
        if profile_values.get(canonical) is not None
    }


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _write_legacy(
    store: ProfileStore,
    identity_id: str,
    profile_values: dict[str, Any],
    legacy_row: dict[str, Any] | None,
    counters: RunCounters,
) -> None:
    with store.transaction():
        if legacy_row is not None:
            store.replace_employee(identity_id, legacy_row)
            counters.employee_rows_replaced += 1
            return
        values = legacy_sync_values(profile_values)
        if values:
            counters.employee_rows_synced += store.sync_employee(identity_id, values)


def merge_profile(
    store: ProfileStore,
    identity_id: str,
    patch: ProfilePatch,
    legacy_row: dict[str, Any] | None = None,
    legacy_sync: str = "best_effort",
    locks: IdentityLocks | None = None,
    counters: RunCounters | None = None,
) -> MergeOutcome:
    """Apply ``patch`` to ``identity_id`` non-destructively.

    Args:
        legacy_row: full employee row for the batch refresh path; None for
            single-record saves, which coalesce-sync the mirrored columns.
        legacy_sync: "best_effort" or "strict" (see module docstring).

    Raises:
        PersistenceError: the profile write failed, or the legacy write
            failed under the strict policy.  Nothing is left applied.
    """
    if legacy_sync not in LEGACY_SYNC_POLICIES:
        raise ValueError(f"legacy_sync must be one of {LEGACY_SYNC_POLICIES}")
    counters = counters if counters is not None else RunCounters()
    locks = locks if locks is not None else _default_locks
    profile_values = patch.profile_values()
    warnings: list[PartialWriteWarning] = []

    with locks.hold(identity_id):
        with store.transaction():
            if patch.full_name:
                store.update_identity_name(identity_id, patch.full_name)

            profile = store.upsert_profile(identity_id, profile_values)
            counters.profiles_upserted += 1

            if patch.family_details is not None:
                counters.family_members_inserted += store.replace_family_members(
                    identity_id, family_member_rows(patch.family_details)
                )
            if patch.education is not None:
                counters.academic_rows_inserted += store.replace_academic_info(
                    identity_id, academic_rows(patch.education)
                )

            step = "replace" if legacy_row is not None else "sync"
            try:
                _write_legacy(store, identity_id, profile_values, legacy_row, counters)
            except PersistenceError as exc:
                if legacy_sync == "strict":
                    raise
                warning = PartialWriteWarning(identity_id, step, str(exc))
                log.warning("%s", warning)
                counters.legacy_sync_failures += 1
                counters.warnings.append(str(warning))
                warnings.append(warning)

    return MergeOutcome(identity_id=identity_id, profile=profile, warnings=warnings)
