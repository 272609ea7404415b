"""Unit tests for profile_etl.merge against the in-memory store."""

from __future__ import annotations

import logging
import threading

import pytest

from profile_etl.identity import resolve_identity
from profile_etl.mapper import map_extracted_to_patch, map_raw_to_employee_row
from profile_etl.merge import (
    IdentityLocks,
    academic_rows,
    family_member_rows,
    legacy_sync_values,
    merge_profile,
)
from profile_etl.models import EducationEntry, FamilyMember, ProfilePatch
from profile_etl.shared import PersistenceError, RunCounters
from profile_etl.store import InMemoryStore


class _BrokenLegacyStore(InMemoryStore):
    """Store whose legacy employee writes always fail."""

    def sync_employee(self, identity_id, values):
        raise PersistenceError("employee", "sync")

    def replace_employee(self, identity_id, row):
        raise PersistenceError("employee", "replace")


@pytest.fixture
def store():
    return InMemoryStore()


def _identity(store, email="a@x.com", name=""):
    return store.insert_identity(email, name)


def _merge_by_email(store, bag, **kwargs):
    patch = map_extracted_to_patch(bag)
    resolution = resolve_identity(store, patch, privileged=True)
    return merge_profile(store, resolution.identity_id, patch, **kwargs)


# ---------------------------------------------------------------------------
# Profile merge
# ---------------------------------------------------------------------------

class TestMergeProfile:
    def test_first_merge_creates_profile(self, store):
        identity = _identity(store)
        outcome = merge_profile(store, identity, ProfilePatch(full_name="A", department="Eng"))
        assert outcome.identity_id == identity
        assert outcome.warnings == []
        assert store.profiles[identity]["full_name"] == "A"
        assert store.profiles[identity]["department"] == "Eng"

    def test_two_patches_accumulate(self, store):
        _merge_by_email(store, {"Official_Email": "a@x.com", "Full_Name": "A"})
        _merge_by_email(store, {"Official_Email": "a@x.com", "Department": "Eng"})
        assert len(store.users) == 1
        (profile,) = store.profiles.values()
        assert profile["full_name"] == "A"
        assert profile["department"] == "Eng"

    def test_absent_field_never_erases(self, store):
        identity = _identity(store)
        merge_profile(store, identity, ProfilePatch(phone="111", bio="hello"))
        merge_profile(store, identity, ProfilePatch(phone="222"))
        profile = store.profiles[identity]
        assert profile["phone"] == "222"
        assert profile["bio"] == "hello"

    def test_same_patch_twice_is_idempotent(self, store):
        identity = _identity(store)
        patch = ProfilePatch(full_name="A", skills=["Python"], experience_years=3)
        merge_profile(store, identity, patch)
        first = dict(store.profiles[identity])
        merge_profile(store, identity, patch)
        second = dict(store.profiles[identity])
        first.pop("updated_at")
        second.pop("updated_at")
        assert first == second

    def test_block_replaced_as_a_whole(self, store):
        identity = _identity(store)
        merge_profile(store, identity, map_extracted_to_patch({
            "Bank_Details": {"bank_name": "HDFC", "ifsc": "HDFC0001"},
        }))
        merge_profile(store, identity, map_extracted_to_patch({
            "Bank_Details": {"bank_name": "SBI"},
        }))
        assert store.profiles[identity]["bank_details"] == {"bank_name": "SBI"}

    def test_name_updates_identity(self, store):
        identity = _identity(store, name="Old")
        merge_profile(store, identity, ProfilePatch(full_name="New"))
        assert store.users[identity]["full_name"] == "New"

    def test_patch_without_name_keeps_identity_name(self, store):
        identity = _identity(store, name="Kept")
        merge_profile(store, identity, ProfilePatch(department="Ops"))
        assert store.users[identity]["full_name"] == "Kept"

    def test_counters(self, store):
        identity = _identity(store)
        counters = RunCounters()
        merge_profile(store, identity, ProfilePatch(full_name="A"), counters=counters)
        assert counters.profiles_upserted == 1

    def test_unknown_policy_rejected(self, store):
        identity = _identity(store)
        with pytest.raises(ValueError, match="legacy_sync"):
            merge_profile(store, identity, ProfilePatch(), legacy_sync="sometimes")

    def test_unknown_identity_fails_without_side_effects(self, store):
        with pytest.raises(PersistenceError):
            merge_profile(store, "00000000-0000-0000-0000-000000000000", ProfilePatch(bio="x"))
        assert store.profiles == {}


# ---------------------------------------------------------------------------
# Child tables
# ---------------------------------------------------------------------------

class TestChildTables:
    def test_family_and_education_rows_written(self, store):
        identity = _identity(store)
        counters = RunCounters()
        patch = ProfilePatch(
            family_details=[FamilyMember(name="Ravi", relation="Father", age=61)],
            education=[EducationEntry(degree="B.E.", college="RVCE", passout_year=2014, grade="8.1")],
        )
        merge_profile(store, identity, patch, counters=counters)
        assert store.family_members[identity] == [{
            "member_type": "Father", "member_name": "Ravi", "contact": None,
            "relation": "Father", "occupation": None, "age": "61",
        }]
        assert store.academic_info[identity] == [{
            "qualification": "B.E.", "institution_name": "RVCE",
            "passout_year": "2014", "grade_percentage": "8.1",
        }]
        assert counters.family_members_inserted == 1
        assert counters.academic_rows_inserted == 1

    def test_absent_block_leaves_rows(self, store):
        identity = _identity(store)
        merge_profile(store, identity, ProfilePatch(family_details=[FamilyMember(name="Ravi")]))
        merge_profile(store, identity, ProfilePatch(bio="x"))
        assert len(store.family_members[identity]) == 1

    def test_resupplied_block_replaces_rows(self, store):
        identity = _identity(store)
        merge_profile(store, identity, ProfilePatch(family_details=[
            FamilyMember(name="Ravi"), FamilyMember(name="Meena"),
        ]))
        merge_profile(store, identity, ProfilePatch(family_details=[FamilyMember(name="Anu")]))
        assert [m["member_name"] for m in store.family_members[identity]] == ["Anu"]

    def test_member_without_relation_is_family(self):
        (row,) = family_member_rows([FamilyMember(name="X")])
        assert row["member_type"] == "Family"
        assert row["relation"] is None

    def test_academic_rows_trim(self):
        (row,) = academic_rows([EducationEntry(degree="  MBA ", college="")])
        assert row["qualification"] == "MBA"
        assert row["institution_name"] is None


# ---------------------------------------------------------------------------
# Legacy employee write
# ---------------------------------------------------------------------------

class TestLegacySync:
    def test_sync_values_use_legacy_column_names(self):
        values = legacy_sync_values({"phone": "99", "job_title": "Dev", "bio": "x"})
        assert values == {"mobile_no": "99", "designation": "Dev"}

    def test_single_record_sync_coalesces(self, store):
        identity = _identity(store)
        merge_profile(store, identity, ProfilePatch(full_name="A"))
        store.replace_employee(identity, {"mobile_no": "111", "designation": "QA", "pan": "P1"})
        counters = RunCounters()
        merge_profile(store, identity, ProfilePatch(phone="222"), counters=counters)
        row = store.employee[identity]
        assert row["mobile_no"] == "222"
        assert row["designation"] == "QA"
        assert row["pan"] == "P1"
        assert counters.employee_rows_synced == 1

    def test_sync_without_legacy_row_is_noop(self, store):
        identity = _identity(store)
        counters = RunCounters()
        outcome = merge_profile(store, identity, ProfilePatch(phone="222"), counters=counters)
        assert store.employee == {}
        assert counters.employee_rows_synced == 0
        assert outcome.warnings == []

    def test_batch_row_replaces_whole_legacy_row(self, store):
        identity = _identity(store)
        merge_profile(store, identity, ProfilePatch(full_name="A"))
        store.replace_employee(identity, {"pan": "OLD", "designation": "QA"})
        counters = RunCounters()
        sheet_row = {"Designation": "Lead", "Email": "a@x.com"}
        legacy = map_raw_to_employee_row({**sheet_row, "_raw": sheet_row})
        merge_profile(store, identity, ProfilePatch(job_title="Lead"), legacy_row=legacy, counters=counters)
        row = store.employee[identity]
        assert row["designation"] == "Lead"
        assert row["pan"] is None
        assert counters.employee_rows_replaced == 1


class TestLegacyPolicy:
    def test_best_effort_keeps_profile_and_warns(self, caplog):
        store = _BrokenLegacyStore()
        identity = _identity(store)
        counters = RunCounters()
        with caplog.at_level(logging.WARNING, logger="profile_etl.merge"):
            outcome = merge_profile(
                store, identity, ProfilePatch(full_name="A"),
                legacy_row={"designation": "Dev"}, counters=counters,
            )
        assert store.profiles[identity]["full_name"] == "A"
        (warning,) = outcome.warnings
        assert warning.step == "replace"
        assert warning.identity_id == identity
        assert str(warning).startswith("legacy_sync_failed:")
        assert counters.legacy_sync_failures == 1
        assert counters.warnings == [str(warning)]
        assert "legacy_sync_failed" in caplog.text

    def test_strict_rolls_back_whole_record(self):
        store = _BrokenLegacyStore()
        identity = _identity(store, name="Before")
        with pytest.raises(PersistenceError):
            merge_profile(
                store, identity, ProfilePatch(full_name="After", phone="1"),
                legacy_sync="strict",
            )
        assert store.profiles == {}
        assert store.users[identity]["full_name"] == "Before"

    def test_strict_succeeds_when_legacy_write_succeeds(self, store):
        identity = _identity(store)
        outcome = merge_profile(store, identity, ProfilePatch(full_name="A"), legacy_sync="strict")
        assert outcome.warnings == []


# ---------------------------------------------------------------------------
# IdentityLocks
# ---------------------------------------------------------------------------

class TestIdentityLocks:
    def test_same_identity_serialized(self):
        locks = IdentityLocks()
        entered = threading.Event()

        def contender():
            with locks.hold("id-1"):
                entered.set()

        with locks.hold("id-1"):
            worker = threading.Thread(target=contender)
            worker.start()
            assert not entered.wait(0.1)
        worker.join(timeout=2)
        assert entered.is_set()

    def test_different_identities_independent(self):
        locks = IdentityLocks()
        entered = threading.Event()

        def other():
            with locks.hold("id-2"):
                entered.set()

        with locks.hold("id-1"):
            worker = threading.Thread(target=other)
            worker.start()
            assert entered.wait(2)
        worker.join(timeout=2)

    def test_idle_entries_dropped(self):
        locks = IdentityLocks()
        with locks.hold("id-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_entry_kept_while_a_waiter_remains(self):
        locks = IdentityLocks()
        entered = threading.Event()
        release = threading.Event()

        def waiter():
            with locks.hold("id-1"):
                entered.set()
                release.wait(2)

        with locks.hold("id-1"):
            worker = threading.Thread(target=waiter)
            worker.start()
            assert not entered.wait(0.1)
        assert entered.wait(2)
        assert len(locks) == 1
        release.set()
        worker.join(timeout=2)
        assert len(locks) == 0

    def test_merges_leave_registry_empty(self, store):
        locks = IdentityLocks()
        for email in ("a@x.com", "b@x.com", "c@x.com"):
            identity = _identity(store, email=email)
            merge_profile(store, identity, ProfilePatch(bio="x"), locks=locks)
        assert len(locks) == 0
