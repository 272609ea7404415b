"""profile_etl.models

Typed records exchanged between the mapper, resolver and merge executor.

ProfilePatch is a partial canonical record: every field is optional and a
None field means "not supplied", never "clear this value".  Structured
blocks (family, bank, personal, address, education, documents) are typed
dataclasses validated at construction; unknown keys inside a block survive
in ``extra`` so a pre-structured producer's document is stored unreshaped.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Mapping

from profile_etl.shared import PartialWriteWarning, ValidationError

# ---------------------------------------------------------------------------
# Column catalogue
# ---------------------------------------------------------------------------

# Profile scalar columns, in table order.  ``email`` lives on the identity,
# not the profile row.
PROFILE_SCALAR_FIELDS: tuple[str, ...] = (
    "full_name",
    "phone",
    "personal_email",
    "join_date",
    "department",
    "job_title",
    "employment_type",
    "employee_id",
    "reporting_manager",
    "experience_years",
    "emergency_contact",
    "bio",
    "linkedin_url",
    "github_url",
    "date_of_birth",
    "gender",
    "marital_status",
    "blood_group",
    "uan_number",
    "current_address",
    "permanent_address",
    "bank_name",
    "bank_account_number",
    "bank_ifsc",
    "bank_branch",
)

# List-valued columns stored as JSON documents.
PROFILE_LIST_FIELDS: tuple[str, ...] = (
    "skills",
    "languages_known",
    "certifications",
    "previous_projects",
    "project_history",
)

PROFILE_BLOCK_FIELDS: tuple[str, ...] = (
    "family_details",
    "bank_details",
    "personal_details",
    "address",
    "education",
    "documents",
)

PROFILE_COLUMNS: tuple[str, ...] = (
    PROFILE_SCALAR_FIELDS + PROFILE_LIST_FIELDS + PROFILE_BLOCK_FIELDS
)

JSON_COLUMNS: frozenset[str] = frozenset(PROFILE_LIST_FIELDS + PROFILE_BLOCK_FIELDS)

# Legacy employee table: one flat text column per onboarding-sheet header.
EMPLOYEE_COLUMNS: tuple[str, ...] = (
    "start_time", "completion_time", "email", "name", "full_name", "dob",
    "joining_date", "designation", "department", "marital_status", "pan",
    "adhar_no", "mobile_no", "emergency_contact_no", "personal_mail_id",
    "blood_group", "bank_name", "account_number", "ifsc", "bank_branch",
    "uan_no", "current_address", "permanent_address", "language_known",
    "name_1", "relation", "occupation", "age", "contact",
    "name_2", "relation1", "occupation1", "age1", "contact1",
    "name_3", "relation2", "occupation2", "age2",
    "name_4", "relation3", "occupation3", "age3",
    "qualification_1", "college_name", "passout_year", "grade_percentage",
    "qualification_2", "college_name1", "passout_year1", "grade_percentage1",
    "qualification_3", "college_name2", "passout_year2", "grade_percentage2",
    "previous_employer_name", "designation1", "period_of_work",
    "reason_of_leaving", "reporting_manager_contact_email",
    "current_address_proof", "permanent_address_proof", "pan1",
    "bank_details_proof", "ssc_10th_certificate", "hsc_12th_certificate",
    "graduation_certificate", "post_graduation",
    "previous_employment_experience_letter",
    "previous_employment_offer_letter", "previous_employment_salary_slip",
    "updated_resume", "passport_size_photo",
)

# Canonical profile field -> legacy employee column it is mirrored into on
# single-record saves.
LEGACY_SYNC_COLUMNS: dict[str, str] = {
    "full_name": "full_name",
    "phone": "mobile_no",
    "job_title": "designation",
    "department": "department",
    "personal_email": "personal_mail_id",
    "emergency_contact": "emergency_contact_no",
}


# ---------------------------------------------------------------------------
# Structured blocks
# ---------------------------------------------------------------------------

@dataclass
class _Block:
    """Base for object-shaped blocks: known keys typed, the rest in extra."""

    block_name: ClassVar[str] = "block"
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Any):
        if not isinstance(data, Mapping):
            raise ValidationError(
                f"{cls.block_name} must be an object, got {type(data).__name__}"
            )
        known = {f.name for f in fields(cls) if f.name != "extra"}
        kwargs = {k: data[k] for k in known if k in data}
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        out = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "extra" and getattr(self, f.name) is not None
        }
        out.update(self.extra)
        return out


@dataclass
class FamilyMember(_Block):
    block_name: ClassVar[str] = "family_details entry"
    name: Any = None
    relation: Any = None
    occupation: Any = None
    age: Any = None
    contact: Any = None


@dataclass
class BankDetails(_Block):
    block_name: ClassVar[str] = "bank_details"
    bank_name: Any = None
    account_number: Any = None
    ifsc: Any = None
    branch: Any = None


@dataclass
class PersonalDetails(_Block):
    block_name: ClassVar[str] = "personal_details"
    dob: Any = None
    gender: Any = None
    marital_status: Any = None
    blood_group: Any = None
    languages: Any = None
    uan: Any = None
    emergency_contact: Any = None


@dataclass
class AddressBlock(_Block):
    block_name: ClassVar[str] = "address"
    current: Any = None
    permanent: Any = None


@dataclass
class EducationEntry(_Block):
    block_name: ClassVar[str] = "education entry"
    degree: Any = None
    college: Any = None
    passout_year: Any = None
    grade: Any = None


@dataclass
class DocumentsSubmitted:
    """Checklist of submitted documents; kept as the producer supplied it."""

    entries: dict[str, Any] | list[Any]

    @classmethod
    def from_value(cls, data: Any) -> "DocumentsSubmitted":
        if isinstance(data, Mapping):
            return cls(entries=dict(data))
        if isinstance(data, (list, tuple)):
            return cls(entries=list(data))
        raise ValidationError(
            f"documents must be an object or list, got {type(data).__name__}"
        )

    def to_dict(self) -> dict[str, Any] | list[Any]:
        return self.entries


def _entry_list(entry_cls, data: Any, block: str) -> list:
    if not isinstance(data, (list, tuple)):
        raise ValidationError(f"{block} must be a list, got {type(data).__name__}")
    return [entry_cls.from_mapping(item) for item in data]


def build_block(name: str, data: Any) -> Any:
    """Validate a raw nested value into its typed block."""
    if name == "family_details":
        return _entry_list(FamilyMember, data, name)
    if name == "education":
        return _entry_list(EducationEntry, data, name)
    if name == "bank_details":
        return BankDetails.from_mapping(data)
    if name == "personal_details":
        return PersonalDetails.from_mapping(data)
    if name == "address":
        return AddressBlock.from_mapping(data)
    if name == "documents":
        return DocumentsSubmitted.from_value(data)
    raise ValidationError(f"unknown structured block '{name}'")


def block_to_json(value: Any) -> Any:
    if isinstance(value, list):
        return [block_to_json(v) for v in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


# ---------------------------------------------------------------------------
# ProfilePatch
# ---------------------------------------------------------------------------

@dataclass
class ProfilePatch:
    email: str | None = None
    full_name: str | None = None
    phone: str | None = None
    personal_email: str | None = None
    join_date: str | None = None
    department: str | None = None
    job_title: str | None = None
    employment_type: str | None = None
    employee_id: str | None = None
    reporting_manager: str | None = None
    experience_years: int | None = None
    emergency_contact: str | None = None
    bio: str | None = None
    linkedin_url: str | None = None
    github_url: str | None = None
    date_of_birth: str | None = None
    gender: str | None = None
    marital_status: str | None = None
    blood_group: str | None = None
    uan_number: str | None = None
    current_address: str | None = None
    permanent_address: str | None = None
    bank_name: str | None = None
    bank_account_number: str | None = None
    bank_ifsc: str | None = None
    bank_branch: str | None = None
    skills: list[Any] | None = None
    languages_known: list[Any] | None = None
    certifications: list[Any] | None = None
    previous_projects: list[Any] | None = None
    project_history: list[Any] | None = None
    family_details: list[FamilyMember] | None = None
    bank_details: BankDetails | None = None
    personal_details: PersonalDetails | None = None
    address: AddressBlock | None = None
    education: list[EducationEntry] | None = None
    documents: DocumentsSubmitted | None = None
    raw: dict[str, Any] | None = field(default=None, repr=False, compare=False)

    def profile_values(self) -> dict[str, Any]:
        """Supplied profile columns only, blocks rendered as JSON documents."""
        out: dict[str, Any] = {}
        for name in PROFILE_COLUMNS:
            value = getattr(self, name)
            if value is None:
                continue
            out[name] = block_to_json(value) if name in PROFILE_BLOCK_FIELDS else value
        return out

    def is_empty(self) -> bool:
        return self.email is None and not self.profile_values()

    def to_dict(self) -> dict[str, Any]:
        out = {"email": self.email} if self.email is not None else {}
        out.update(self.profile_values())
        return out


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class Resolution:
    identity_id: str
    created: bool


@dataclass
class MergeOutcome:
    identity_id: str
    profile: dict[str, Any]
    warnings: list[PartialWriteWarning] = field(default_factory=list)
