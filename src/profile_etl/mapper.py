"""profile_etl.mapper

Field mapping: raw key->value bag -> canonical ProfilePatch.

A field with no resolvable value is left as None on the patch (never '' or
0); the merge executor relies on that to leave stored values untouched.

Resolution order for one canonical field:
  1. its alias list in profile_fields (first alias with a value wins)
  2. fan-out paths (project_history), first path with a value wins
  3. values copied out of a supplied structured block (date_of_birth from
     personal_details.dob, bank_name from bank_details.bank_name, ...)
  4. fallbacks to another canonical field (personal_email -> email)
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from profile_etl.aliases import (
    RAW_PASSTHROUGH_KEY,
    AliasConfig,
    FanOutPath,
    build_label_index,
    default_alias_config,
    resolve,
)
from profile_etl.models import (
    PROFILE_BLOCK_FIELDS,
    PROFILE_LIST_FIELDS,
    ProfilePatch,
    build_block,
)
from profile_etl.normalize import (
    normalize_email,
    normalize_space,
    parse_int,
    parse_list,
    trim,
)
from profile_etl.shared import ValidationError

log = logging.getLogger(__name__)

# Flat legacy-duplicate field -> (block, key inside block)
BLOCK_DERIVED_FIELDS: dict[str, tuple[str, str]] = {
    "date_of_birth": ("personal_details", "dob"),
    "gender": ("personal_details", "gender"),
    "marital_status": ("personal_details", "marital_status"),
    "blood_group": ("personal_details", "blood_group"),
    "languages_known": ("personal_details", "languages"),
    "uan_number": ("personal_details", "uan"),
    "emergency_contact": ("personal_details", "emergency_contact"),
    "current_address": ("address", "current"),
    "permanent_address": ("address", "permanent"),
    "bank_name": ("bank_details", "bank_name"),
    "bank_account_number": ("bank_details", "account_number"),
    "bank_ifsc": ("bank_details", "ifsc"),
    "bank_branch": ("bank_details", "branch"),
}

_INT_FIELDS = frozenset({"experience_years"})


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def _coerce(name: str, value: Any) -> Any:
    """Coerce a resolved raw value to the canonical field's type, or None."""
    if value is None:
        return None
    if name in PROFILE_LIST_FIELDS:
        if not isinstance(value, (str, list, tuple)):
            raise ValidationError(
                f"field '{name}' expects a list or delimited text, got {type(value).__name__}"
            )
        return parse_list(value)
    if isinstance(value, (Mapping, list, tuple)):
        raise ValidationError(
            f"field '{name}' expects a scalar value, got {type(value).__name__}"
        )
    if name in _INT_FIELDS:
        parsed = parse_int(value)
        if parsed is None:
            log.debug("Dropping unparseable %s value %r", name, value)
        return parsed
    if name in ("email", "personal_email"):
        return normalize_email(value)
    return trim(value)


def _fan_out_value(raw: Mapping[str, Any], paths: tuple[FanOutPath, ...], index) -> Any:
    for path in paths:
        value = resolve(raw, path.labels, index)
        if value is None:
            continue
        if isinstance(value, Mapping):
            value = dict(value)
        elif not isinstance(value, (list, tuple)):
            value = trim(value)
        if not value:
            continue
        if path.shape == "list":
            if isinstance(value, Mapping):
                return [value]
            return list(value) if isinstance(value, (list, tuple)) else parse_list(value)
        if path.shape == "wrap":
            return [value]
        return [{"name": value, "status": "current", "start_date": None}]
    return None


def _block_value(block: Any, key: str) -> Any:
    if block is None:
        return None
    value = getattr(block, key, None)
    if value is None:
        value = block.extra.get(key) if hasattr(block, "extra") else None
    return value


# ---------------------------------------------------------------------------
# Public mappers
# ---------------------------------------------------------------------------

def map_extracted_to_patch(
    raw: Mapping[str, Any],
    config: AliasConfig | None = None,
) -> ProfilePatch:
    """Map a raw field bag (extraction output, form payload or spreadsheet
    row) to a ProfilePatch.

    Raises:
        ValidationError: a structured block or scalar field has the wrong
            shape (e.g. Bank_Details given as a plain string).
    """
    config = config or default_alias_config()
    index = build_label_index(raw)
    values: dict[str, Any] = {}

    for name, aliases in config.profile_fields.items():
        values[name] = _coerce(name, resolve(raw, aliases, index))

    for name, paths in config.fan_out.items():
        if values.get(name) is None:
            values[name] = _fan_out_value(raw, paths, index)

    for name in PROFILE_BLOCK_FIELDS:
        containers = config.nested_blocks.get(name)
        if not containers:
            continue
        nested = resolve(raw, containers, index)
        values[name] = build_block(name, nested) if nested is not None else None

    for name, (block_name, key) in BLOCK_DERIVED_FIELDS.items():
        if values.get(name) is not None:
            continue
        derived = _block_value(values.get(block_name), key)
        if isinstance(derived, Mapping) or (
            isinstance(derived, (list, tuple)) and name not in PROFILE_LIST_FIELDS
        ):
            # Structured sub-value; the block itself already carries it.
            continue
        values[name] = _coerce(name, derived)

    for name, targets in config.fallbacks.items():
        if values.get(name) is None:
            for target in targets:
                if values.get(target) is not None:
                    values[name] = values[target]
                    break

    if RAW_PASSTHROUGH_KEY in raw and isinstance(raw[RAW_PASSTHROUGH_KEY], Mapping):
        passthrough = dict(raw[RAW_PASSTHROUGH_KEY])
    else:
        passthrough = {k: v for k, v in raw.items() if k != RAW_PASSTHROUGH_KEY}

    known = {k: v for k, v in values.items() if k in ProfilePatch.__dataclass_fields__}
    return ProfilePatch(raw=passthrough, **known)


def map_raw_to_employee_row(
    raw: Mapping[str, Any],
    config: AliasConfig | None = None,
) -> dict[str, str | None] | None:
    """Project a spreadsheet row onto every legacy employee column.

    Only rows carrying a _raw passthrough (read from a spreadsheet) have a
    legacy row; anything else returns None.  Unmatched columns are None so
    the delete-then-insert refresh writes a full row.
    """
    source = raw.get(RAW_PASSTHROUGH_KEY)
    if not isinstance(source, Mapping):
        return None
    config = config or default_alias_config()
    index = build_label_index(source)
    row: dict[str, str | None] = {}
    for column, aliases in config.legacy_fields.items():
        value = resolve(source, aliases, index)
        row[column] = None if isinstance(value, (Mapping, list)) else trim(value)
    return row


def raw_headers(raw: Mapping[str, Any]) -> list[str]:
    """Headers actually present on a row, whitespace-collapsed for diagnostics."""
    source = raw.get(RAW_PASSTHROUGH_KEY)
    if not isinstance(source, Mapping):
        source = raw
    headers = (normalize_space(k) for k in source.keys() if k != RAW_PASSTHROUGH_KEY)
    return [h for h in headers if h]
