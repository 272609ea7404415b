"""Unit tests for profile_etl.identity against the in-memory store."""

from __future__ import annotations

import uuid

import pytest

from profile_etl.identity import DEFAULT_ROLE, resolve_identity
from profile_etl.mapper import map_extracted_to_patch
from profile_etl.models import ProfilePatch
from profile_etl.shared import AmbiguousInputError, NotFoundError, ValidationError
from profile_etl.store import InMemoryStore


@pytest.fixture
def store():
    return InMemoryStore()


# ---------------------------------------------------------------------------
# Email lookup
# ---------------------------------------------------------------------------

class TestEmailLookup:
    def test_existing_identity_matched(self, store):
        existing = store.insert_identity("a@example.com", "A")
        res = resolve_identity(store, ProfilePatch(email="a@example.com"))
        assert res.identity_id == existing
        assert res.created is False

    def test_privileged_caller_creates_identity(self, store):
        res = resolve_identity(
            store, ProfilePatch(email="new@example.com", full_name="New Hire"), privileged=True
        )
        assert res.created is True
        user = store.get_identity(res.identity_id)
        assert user["email"] == "new@example.com"
        assert user["full_name"] == "New Hire"
        assert store.get_role(res.identity_id) == DEFAULT_ROLE

    def test_created_identity_without_name_gets_empty_name(self, store):
        res = resolve_identity(store, ProfilePatch(email="n@example.com"), privileged=True)
        assert store.get_identity(res.identity_id)["full_name"] == ""

    def test_unprivileged_caller_cannot_create(self, store):
        with pytest.raises(NotFoundError, match="new@example.com"):
            resolve_identity(store, ProfilePatch(email="new@example.com"))
        assert store.users == {}

    def test_lookup_is_case_sensitive(self, store):
        store.insert_identity("Asha@Example.com", "Asha")
        res = resolve_identity(store, ProfilePatch(email="asha@example.com"), privileged=True)
        assert res.created is True

    def test_personal_email_used_when_no_official(self, store):
        existing = store.insert_identity("home@example.net", "H")
        res = resolve_identity(store, ProfilePatch(personal_email="home@example.net"))
        assert res.identity_id == existing

    def test_official_email_preferred_over_personal(self, store):
        official = store.insert_identity("work@example.com", "W")
        store.insert_identity("home@example.net", "H")
        patch = ProfilePatch(email="work@example.com", personal_email="home@example.net")
        assert resolve_identity(store, patch).identity_id == official


# ---------------------------------------------------------------------------
# Hinted identity
# ---------------------------------------------------------------------------

class TestHintedIdentity:
    def test_hint_wins_over_email(self, store):
        caller = store.insert_identity("me@example.com", "Me")
        store.insert_identity("other@example.com", "Other")
        res = resolve_identity(
            store, ProfilePatch(email="other@example.com"), hinted_identity=caller
        )
        assert res.identity_id == caller
        assert res.created is False

    def test_hint_without_email(self, store):
        caller = store.insert_identity("me@example.com", "Me")
        res = resolve_identity(store, ProfilePatch(full_name="Me Myself"), hinted_identity=caller)
        assert res.identity_id == caller

    def test_unknown_hint(self, store):
        with pytest.raises(NotFoundError):
            resolve_identity(store, ProfilePatch(), hinted_identity=str(uuid.uuid4()))

    def test_malformed_hint(self, store):
        with pytest.raises(NotFoundError):
            resolve_identity(store, ProfilePatch(), hinted_identity="not-a-uuid")


# ---------------------------------------------------------------------------
# Ambiguous input
# ---------------------------------------------------------------------------

class TestAmbiguousInput:
    def test_no_email_lists_found_headers(self, store):
        patch = map_extracted_to_patch({"Full Name": "No Mail", "Department": "Eng"})
        with pytest.raises(AmbiguousInputError) as excinfo:
            resolve_identity(store, patch, privileged=True)
        message = str(excinfo.value)
        assert message.startswith("Missing email")
        assert "Found headers: Full Name, Department" in message
        assert "Official_Email" in message
        assert excinfo.value.headers == ["Full Name", "Department"]

    def test_is_a_validation_error(self, store):
        with pytest.raises(ValidationError):
            resolve_identity(store, ProfilePatch(full_name="X"), privileged=True)

    def test_malformed_email_is_ambiguous(self, store):
        with pytest.raises(AmbiguousInputError):
            resolve_identity(store, ProfilePatch(email="not an email"), privileged=True)
        assert store.users == {}

    def test_no_headers_at_all(self, store):
        with pytest.raises(AmbiguousInputError, match=r"Found headers: \(none\)"):
            resolve_identity(store, ProfilePatch(), privileged=True)
