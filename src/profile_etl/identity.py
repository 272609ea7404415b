"""profile_etl.identity

Identity resolution: decide which person a ProfilePatch belongs to.

Order:
  1. A hinted identity from the caller (e.g. the authenticated user saving
     their own profile) wins outright; it must exist.
  2. Otherwise the patch's email (official, then personal) is looked up by
     exact match on the stored users.email value.
  3. No match: privileged callers create a new identity carrying the email
     and name; everyone else gets NotFoundError.
"""

from __future__ import annotations

import logging
import uuid

from profile_etl.aliases import AliasConfig, default_alias_config
from profile_etl.mapper import raw_headers
from profile_etl.models import ProfilePatch, Resolution
from profile_etl.normalize import looks_like_email
from profile_etl.shared import AmbiguousInputError, NotFoundError
from profile_etl.store import ProfileStore

log = logging.getLogger(__name__)

DEFAULT_ROLE = "user"


def is_identity_id(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def missing_email_message(patch: ProfilePatch, config: AliasConfig | None = None) -> str:
    config = config or default_alias_config()
    checked = ", ".join(dict.fromkeys(config.email_aliases))
    found = ", ".join(raw_headers(patch.raw or {})) or "(none)"
    return (
        "Missing email - email is required to create or identify user. "
        f"Checked columns for email: {checked}. Found headers: {found}"
    )


def resolve_identity(
    store: ProfileStore,
    patch: ProfilePatch,
    hinted_identity: str | None = None,
    privileged: bool = False,
    config: AliasConfig | None = None,
) -> Resolution:
    """Return the Resolution for a patch.

    Raises:
        NotFoundError: hinted identity does not exist, or no identity matches
            the email and the caller may not create one.
        AmbiguousInputError: no hint and no usable email on the patch.
    """
    if hinted_identity:
        if not is_identity_id(hinted_identity) or store.get_identity(hinted_identity) is None:
            raise NotFoundError(
                f"User {hinted_identity} does not exist. Please create user first."
            )
        return Resolution(identity_id=str(hinted_identity), created=False)

    email = patch.email or patch.personal_email
    if not looks_like_email(email):
        raise AmbiguousInputError(
            missing_email_message(patch, config),
            headers=raw_headers(patch.raw or {}),
        )

    identity_id = store.find_identity_by_email(email)
    if identity_id is not None:
        return Resolution(identity_id=identity_id, created=False)

    if not privileged:
        raise NotFoundError(
            f"No user found with email {email}. Please create user first."
        )

    identity_id = store.insert_identity(email, patch.full_name or "")
    store.assign_role(identity_id, DEFAULT_ROLE)
    log.info("Created identity %s for %s", identity_id, email)
    return Resolution(identity_id=identity_id, created=True)
