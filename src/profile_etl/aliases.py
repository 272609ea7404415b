"""profile_etl.aliases

Alias resolution: maps human-authored labels (spreadsheet headers,
extraction keys, form field names) to canonical field identifiers.

Responsibilities:
  - resolve() a canonical field's value from a raw key->value bag given an
    ordered alias list (first listed alias wins)
  - Load and validate the static alias tables from aliases.yml
  - Reject tables where two canonical fields claim the same raw label
  - Hash YAML content for traceability

Usage:
    from profile_etl.aliases import default_alias_config, resolve

    config = default_alias_config()
    email = resolve(row, config.profile_fields["email"])
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from profile_etl.models import (
    EMPLOYEE_COLUMNS,
    PROFILE_BLOCK_FIELDS,
    PROFILE_LIST_FIELDS,
    PROFILE_SCALAR_FIELDS,
)
from profile_etl.normalize import normalize_label

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_ALIAS_PATH = Path(__file__).with_name("aliases.yml")

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "profile_fields",
    "fallbacks",
    "fan_out",
    "nested_blocks",
    "legacy_fields",
})

VALID_FAN_OUT_SHAPES = frozenset({"list", "wrap", "current_project"})

RAW_PASSTHROUGH_KEY = "_raw"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class AliasConfigError(ValueError):
    """Raised when an alias YAML file fails schema or consistency validation."""


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def build_label_index(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Return {normalized_label: value} for a raw bag.

    When two raw keys normalize to the same label, the first non-None value
    in the bag's own order is kept.  The _raw passthrough is never indexed.
    """
    index: dict[str, Any] = {}
    for key, value in raw.items():
        if key == RAW_PASSTHROUGH_KEY or value is None:
            continue
        norm = normalize_label(key)
        if norm not in index:
            index[norm] = value
    return index


def resolve(
    raw: Mapping[str, Any],
    aliases: list[str] | tuple[str, ...],
    index: dict[str, Any] | None = None,
) -> Any | None:
    """Return the first non-None value found for the alias list, else None.

    For each alias in order: exact key match first, then normalized match
    against the bag's normalized keys.  Pass a prebuilt ``index`` (from
    build_label_index) when resolving many fields against the same bag.
    """
    if index is None:
        index = build_label_index(raw)
    for alias in aliases:
        value = raw.get(alias)
        if value is not None:
            return value
        value = index.get(normalize_label(alias))
        if value is not None:
            return value
    return None


# ---------------------------------------------------------------------------
# AliasConfig dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FanOutPath:
    labels: tuple[str, ...]
    shape: str


@dataclass
class AliasConfig:
    """Parsed, validated alias tables loaded from a YAML file."""

    version: str
    yaml_hash: str
    profile_fields: dict[str, tuple[str, ...]]
    fallbacks: dict[str, tuple[str, ...]]
    fan_out: dict[str, tuple[FanOutPath, ...]]
    nested_blocks: dict[str, tuple[str, ...]]
    legacy_fields: dict[str, tuple[str, ...]]
    raw_yaml: str = field(repr=False, default="")

    @property
    def email_aliases(self) -> tuple[str, ...]:
        return self.profile_fields.get("email", ()) + self.profile_fields.get(
            "personal_email", ()
        )


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_alias_config(yaml_path: Path) -> AliasConfig:
    """Load, validate, and return an AliasConfig from a YAML file.

    Raises:
        AliasConfigError: If any required key is missing or two canonical
            fields claim the same raw label.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    return parse_alias_config(raw)


def parse_alias_config(raw: str) -> AliasConfig:
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_alias_config(data)
    return AliasConfig(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        profile_fields=_as_label_table(data["profile_fields"]),
        fallbacks=_as_label_table(data.get("fallbacks") or {}),
        fan_out={
            name: tuple(
                FanOutPath(labels=tuple(p["labels"]), shape=p["shape"])
                for p in paths
            )
            for name, paths in (data.get("fan_out") or {}).items()
        },
        nested_blocks=_as_label_table(data["nested_blocks"]),
        legacy_fields=_as_label_table(data["legacy_fields"]),
        raw_yaml=raw,
    )


def _as_label_table(table: dict[str, Any]) -> dict[str, tuple[str, ...]]:
    return {str(k): tuple(str(a) for a in v) for k, v in table.items()}


def validate_alias_config(data: Any) -> None:
    """Raise AliasConfigError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - Every label list is a non-empty list of strings
      - No raw label (after normalization) claimed by two canonical fields,
        checked separately for the profile-side and legacy tables
      - Fallback targets and fan-out shapes are known
    """
    if not isinstance(data, dict):
        raise AliasConfigError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise AliasConfigError(f"Missing required YAML keys: {sorted(missing_keys)}")

    for section in ("profile_fields", "nested_blocks", "legacy_fields"):
        table = data.get(section)
        if not isinstance(table, dict) or not table:
            raise AliasConfigError(f"'{section}' must be a non-empty mapping.")
        for name, labels in table.items():
            _check_label_list(f"{section}.{name}", labels)

    fan_out = data.get("fan_out") or {}
    if not isinstance(fan_out, dict):
        raise AliasConfigError("'fan_out' must be a mapping.")
    for name, paths in fan_out.items():
        if not isinstance(paths, list) or not paths:
            raise AliasConfigError(f"fan_out '{name}' must be a non-empty list.")
        for i, path in enumerate(paths):
            if not isinstance(path, dict):
                raise AliasConfigError(f"fan_out '{name}'[{i}] must be a mapping.")
            _check_label_list(f"fan_out.{name}[{i}]", path.get("labels"))
            if path.get("shape") not in VALID_FAN_OUT_SHAPES:
                raise AliasConfigError(
                    f"fan_out '{name}'[{i}] shape '{path.get('shape')}' must be one of "
                    f"{sorted(VALID_FAN_OUT_SHAPES)}."
                )

    profile_fields = data["profile_fields"]
    fallbacks = data.get("fallbacks") or {}
    if not isinstance(fallbacks, dict):
        raise AliasConfigError("'fallbacks' must be a mapping.")
    for name, targets in fallbacks.items():
        if name not in profile_fields:
            raise AliasConfigError(f"fallback source '{name}' is not a profile field.")
        _check_label_list(f"fallbacks.{name}", targets)
        for target in targets:
            if target not in profile_fields or target == name:
                raise AliasConfigError(
                    f"fallback '{name}' -> '{target}' must name another profile field."
                )

    # Profile-side claims: plain fields, fan-out paths and block containers
    # all read from the same raw bag, so they share one namespace.
    profile_claims: list[tuple[str, list[str]]] = []
    profile_claims += [(f"profile_fields.{k}", v) for k, v in profile_fields.items()]
    for name, paths in fan_out.items():
        profile_claims += [(f"fan_out.{name}", p["labels"]) for p in paths]
    profile_claims += [
        (f"nested_blocks.{k}", v) for k, v in data["nested_blocks"].items()
    ]
    _check_unique_claims(profile_claims)

    flat_fields = {"email"} | set(PROFILE_SCALAR_FIELDS) | set(PROFILE_LIST_FIELDS)
    unknown_fields = (set(profile_fields) | set(fan_out)) - flat_fields
    if unknown_fields:
        raise AliasConfigError(f"unknown profile fields: {sorted(unknown_fields)}")
    unknown_blocks = set(data["nested_blocks"]) - set(PROFILE_BLOCK_FIELDS)
    if unknown_blocks:
        raise AliasConfigError(f"unknown structured blocks: {sorted(unknown_blocks)}")

    unknown_columns = set(data["legacy_fields"]) - set(EMPLOYEE_COLUMNS)
    if unknown_columns:
        raise AliasConfigError(
            f"legacy_fields names unknown employee columns: {sorted(unknown_columns)}"
        )
    _check_unique_claims(
        [(f"legacy_fields.{k}", v) for k, v in data["legacy_fields"].items()]
    )


def _check_label_list(where: str, labels: Any) -> None:
    if not isinstance(labels, list) or not labels:
        raise AliasConfigError(f"'{where}' must be a non-empty list of labels.")
    for label in labels:
        if not isinstance(label, str) or not normalize_label(label):
            raise AliasConfigError(f"'{where}' contains an empty or non-string label.")


def _check_unique_claims(claims: list[tuple[str, list[str]]]) -> None:
    owner_by_label: dict[str, str] = {}
    for owner, labels in claims:
        # A field may list raw and normalized-equal variants of one header.
        for norm in {normalize_label(label) for label in labels}:
            prior = owner_by_label.get(norm)
            if prior is not None and prior != owner:
                raise AliasConfigError(
                    f"raw label '{norm}' claimed by both '{prior}' and '{owner}'."
                )
            owner_by_label[norm] = owner


# ---------------------------------------------------------------------------
# Packaged default
# ---------------------------------------------------------------------------

_default_config: AliasConfig | None = None


def default_alias_config() -> AliasConfig:
    """Return the packaged alias tables, loaded and validated once."""
    global _default_config
    if _default_config is None:
        _default_config = load_alias_config(DEFAULT_ALIAS_PATH)
    return _default_config
