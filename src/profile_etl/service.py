"""profile_etl.service

Single-record entry points used by request handlers: save an extracted
document, save an edited form, delete a person, and read the combined
profile view.

Single-record operations propagate the first fatal error to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from profile_etl.aliases import AliasConfig, default_alias_config
from profile_etl.identity import is_identity_id, resolve_identity
from profile_etl.mapper import map_extracted_to_patch
from profile_etl.merge import IdentityLocks, merge_profile
from profile_etl.models import LEGACY_SYNC_COLUMNS, MergeOutcome, ProfilePatch
from profile_etl.normalize import looks_like_email, trim
from profile_etl.shared import NotFoundError, RunCounters, ValidationError
from profile_etl.store import ProfileStore

log = logging.getLogger(__name__)

# Canonical field -> legacy employee column preferred for it on reads.
VIEW_LEGACY_COLUMNS: dict[str, str] = {
    **LEGACY_SYNC_COLUMNS,
    "join_date": "joining_date",
    "date_of_birth": "dob",
    "marital_status": "marital_status",
    "blood_group": "blood_group",
    "uan_number": "uan_no",
    "current_address": "current_address",
    "permanent_address": "permanent_address",
    "bank_name": "bank_name",
    "bank_account_number": "account_number",
    "bank_ifsc": "ifsc",
    "bank_branch": "bank_branch",
}


def _save(
    store: ProfileStore,
    patch: ProfilePatch,
    caller_identity: str | None,
    caller_is_privileged: bool,
    config: AliasConfig,
    legacy_sync: str,
    locks: IdentityLocks | None,
    counters: RunCounters | None,
) -> MergeOutcome:
    """Resolve and merge one record in a single transaction.

    The caller's identity is the resolution hint, except for a privileged
    caller whose patch carries a usable email: that patch is resolved by its
    email (created if absent) and the caller's own identity is ignored, so
    HR-style saves land on the person the document names.
    """
    carries_email = looks_like_email(patch.email or patch.personal_email)
    hint = None if (caller_is_privileged and carries_email) else caller_identity
    with store.transaction():
        resolution = resolve_identity(
            store, patch,
            hinted_identity=hint,
            privileged=caller_is_privileged,
            config=config,
        )
        outcome = merge_profile(
            store,
            resolution.identity_id,
            patch,
            legacy_sync=legacy_sync,
            locks=locks,
            counters=counters,
        )
    if counters is not None:
        if resolution.created:
            counters.identities_created += 1
        else:
            counters.identities_matched_existing += 1
    return outcome


def extract_and_save(
    store: ProfileStore,
    field_bag: Mapping[str, Any],
    caller_identity: str | None,
    caller_is_privileged: bool = False,
    config: AliasConfig | None = None,
    legacy_sync: str = "best_effort",
    locks: IdentityLocks | None = None,
    counters: RunCounters | None = None,
) -> dict[str, Any]:
    """Map an extraction field bag and merge it.

    Returns {"profile_id", "extracted_profile"}; the field bag is echoed back
    unchanged so the caller can show what was read from the document.
    """
    if not isinstance(field_bag, Mapping):
        raise ValidationError("Extracted profile must be an object")
    config = config or default_alias_config()
    patch = map_extracted_to_patch(field_bag, config)
    outcome = _save(
        store, patch, caller_identity, caller_is_privileged,
        config, legacy_sync, locks, counters,
    )
    log.info("Saved extracted profile for %s", outcome.identity_id)
    return {
        "profile_id": outcome.identity_id,
        "extracted_profile": dict(field_bag),
        "warnings": [str(w) for w in outcome.warnings],
    }


def save_edited(
    store: ProfileStore,
    patch_source: Mapping[str, Any] | None,
    caller_identity: str | None,
    caller_is_privileged: bool = False,
    config: AliasConfig | None = None,
    legacy_sync: str = "best_effort",
    locks: IdentityLocks | None = None,
    counters: RunCounters | None = None,
) -> dict[str, Any]:
    """Merge an edited profile form.  Returns {"profile_id"}."""
    if not patch_source or not isinstance(patch_source, Mapping):
        raise ValidationError("Profile data is required")
    config = config or default_alias_config()
    patch = map_extracted_to_patch(patch_source, config)
    outcome = _save(
        store, patch, caller_identity, caller_is_privileged,
        config, legacy_sync, locks, counters,
    )
    log.info("Saved edited profile for %s", outcome.identity_id)
    return {
        "profile_id": outcome.identity_id,
        "warnings": [str(w) for w in outcome.warnings],
    }


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@dataclass
class DeleteReport:
    identity_id: str
    employee_rows: int
    profile_rows: int
    role_rows: int
    identity_rows: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "employee_rows": self.employee_rows,
            "profile_rows": self.profile_rows,
            "role_rows": self.role_rows,
            "identity_rows": self.identity_rows,
        }


def delete_profile(store: ProfileStore, identity_id: str) -> DeleteReport:
    """Delete employee, profile, role assignment, then the identity.

    Runs as one transaction; each step's row count is logged and returned.
    Child tables go with the profile row.
    """
    if not is_identity_id(identity_id) or store.get_identity(identity_id) is None:
        raise NotFoundError(f"User {identity_id} does not exist.")
    with store.transaction():
        employee_rows = store.delete_employee(identity_id)
        log.info("Deleted %d employee row(s) for %s", employee_rows, identity_id)
        profile_rows = store.delete_profile(identity_id)
        log.info("Deleted %d profile row(s) for %s", profile_rows, identity_id)
        role_rows = store.delete_role_assignment(identity_id)
        log.info("Deleted %d user_roles row(s) for %s", role_rows, identity_id)
        identity_rows = store.delete_identity(identity_id)
        log.info("Deleted %d users row(s) for %s", identity_rows, identity_id)
    return DeleteReport(
        identity_id=identity_id,
        employee_rows=employee_rows,
        profile_rows=profile_rows,
        role_rows=role_rows,
        identity_rows=identity_rows,
    )


# ---------------------------------------------------------------------------
# Read view
# ---------------------------------------------------------------------------

def get_profile_view(store: ProfileStore, identity_id: str) -> dict[str, Any]:
    """Combined profile for display: legacy value when present, else canonical."""
    user = store.get_identity(identity_id) if is_identity_id(identity_id) else None
    if user is None:
        raise NotFoundError(f"User {identity_id} does not exist.")
    profile = store.get_profile(identity_id) or {}
    employee = store.get_employee(identity_id) or {}

    view: dict[str, Any] = {k: v for k, v in profile.items() if k not in ("created_at", "updated_at")}
    view["id"] = identity_id
    view["email"] = user.get("email")
    if not view.get("full_name"):
        view["full_name"] = user.get("full_name") or None
    for canonical, legacy in VIEW_LEGACY_COLUMNS.items():
        legacy_value = trim(employee.get(legacy))
        if legacy_value is not None:
            view[canonical] = legacy_value
        else:
            view.setdefault(canonical, None)
    view["role"] = store.get_role(identity_id)
    return view
