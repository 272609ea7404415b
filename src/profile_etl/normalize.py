"""Normalization functions for profile/employee ingestion.

All functions accept loosely-typed input (upstream bags are not guaranteed to
hold strings) and return the appropriate type or None.
"""

from __future__ import annotations

import re
from typing import Any

_LABEL_SPACE_RE = re.compile(r"\s+")
_LABEL_STRIP_RE = re.compile(r"[^A-Za-z0-9_]")
_LIST_SPLIT_RE = re.compile(r"[,;\n]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None.

    Non-string scalars (numbers from spreadsheet cells) are stringified first.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_label  (alias / header matching)
# ---------------------------------------------------------------------------

def normalize_label(label: Any) -> str:
    """Canonical form of a human-authored header or extraction key.

    trim -> internal whitespace runs to '_' -> drop chars outside
    [A-Za-z0-9_] -> lowercase.  Python's str.strip() and \\s both cover the
    non-breaking space, so 'Current Address\\u00a0' and 'Current Address'
    normalize identically.
    """
    v = str(label).strip()
    v = _LABEL_SPACE_RE.sub("_", v)
    v = _LABEL_STRIP_RE.sub("", v)
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: Any) -> str | None:
    """Trim an email address.

    Case is preserved: identity lookup is an exact match on the stored value.
    """
    return trim(value)


def looks_like_email(value: str | None) -> bool:
    """Return True if the value has the minimal expected email shape."""
    if not value:
        return False
    at = value.find("@")
    return 0 < at < len(value) - 1 and "." in value[at:]


# ---------------------------------------------------------------------------
# Rule 5: parse_list
# ---------------------------------------------------------------------------

def parse_list(value: Any) -> list[Any] | None:
    """Return a list for list-valued fields (skills, languages).

    Lists pass through with blank entries dropped; strings are split on
    ',', ';' or newlines.  Empty results -> None.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        items = [trim(v) if isinstance(v, str) else v for v in value]
        items = [v for v in items if v is not None]
        return items or None
    v = trim(value)
    if v is None:
        return None
    items = [t.strip() for t in _LIST_SPLIT_RE.split(v) if t.strip()]
    return items or None


# ---------------------------------------------------------------------------
# Rule 6: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: Any) -> int | None:
    """Parse an integer, tolerating '5 years' and '4.0'. None on failure."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    v = trim(value)
    if v is None:
        return None
    m = re.match(r"^\s*(-?\d+(?:\.\d+)?)", v)
    if not m:
        return None
    return int(float(m.group(1)))
