from __future__ import annotations

import pytest
from pydantic import ValidationError

from calcrm.core.config import settings
from calcrm.crud.entities import DuplicateError, create_entity, get_entity
from calcrm.services.entity_registry import UnknownEntityType
from calcrm.services.record_lock_service import RecordLockFailure, RecordLockService
from calcrm.services.version_guard import EntityNotFound, VersionConflict, versioned_update


@pytest.fixture
def company(db_session, alice):
    return create_entity(
        db_session,
        "company",
        {"company_code": "ACME", "name": "Acme Instruments"},
        principal=alice,
    )


def test_new_entity_starts_at_version_one(company):
    assert company.version == 1
    assert company.created_by == "alice@example.com"


def test_each_successful_update_bumps_version_by_one(db_session, company, alice):
    for expected in (1, 2, 3):
        updated = versioned_update(
            db_session,
            entity_type="company",
            entity_id=company.id,
            changes={"notes": f"edit {expected}"},
            expected_version=expected,
            principal=alice,
        )
        db_session.commit()
        assert updated.version == expected + 1
        assert updated.notes == f"edit {expected}"


def test_empty_patch_still_bumps_version(db_session, company, alice):
    updated = versioned_update(
        db_session,
        entity_type="company",
        entity_id=company.id,
        changes={},
        expected_version=1,
        principal=alice,
    )
    assert updated.version == 2


def test_optimistic_conflict_scenario(db_session, company, alice, bob):
    # Bring the entity to version 3.
    for expected in (1, 2):
        versioned_update(
            db_session,
            entity_type="company",
            entity_id=company.id,
            changes={"billing_city": "Leeds"},
            expected_version=expected,
            principal=alice,
        )
    db_session.commit()

    x = versioned_update(
        db_session,
        entity_type="company",
        entity_id=company.id,
        changes={"name": "Acme by X"},
        expected_version=3,
        principal=alice,
    )
    db_session.commit()
    assert x.version == 4

    with pytest.raises(VersionConflict) as exc_info:
        versioned_update(
            db_session,
            entity_type="company",
            entity_id=company.id,
            changes={"name": "Acme by Y"},
            expected_version=3,
            principal=bob,
        )
    db_session.rollback()

    assert exc_info.value.expected == 3
    assert exc_info.value.actual == 4
    detail = exc_info.value.to_detail()
    assert detail["code"] == "VERSION_CONFLICT"
    assert detail["current_version"] == 4

    stored = get_entity(db_session, "company", company.id)
    db_session.refresh(stored)
    assert stored.version == 4
    assert stored.name == "Acme by X"
    assert stored.last_changed_by == "alice@example.com"


def test_missing_entity_is_not_a_conflict(db_session, alice, profiles):
    with pytest.raises(EntityNotFound):
        versioned_update(
            db_session,
            entity_type="company",
            entity_id="does-not-exist",
            changes={"name": "x"},
            expected_version=1,
            principal=alice,
        )


def test_version_cannot_be_patched_directly(db_session, company, alice):
    with pytest.raises(ValidationError):
        versioned_update(
            db_session,
            entity_type="company",
            entity_id=company.id,
            changes={"version": 99},
            expected_version=1,
            principal=alice,
        )


def test_unknown_entity_type(db_session, alice, profiles):
    with pytest.raises(UnknownEntityType):
        versioned_update(
            db_session,
            entity_type="invoice",
            entity_id="1",
            changes={},
            expected_version=1,
            principal=alice,
        )


def test_duplicate_create_is_reported(db_session, company, alice):
    with pytest.raises(DuplicateError):
        create_entity(db_session, "company", {"company_code": "ACME", "name": "Other"}, principal=alice)


def test_enforced_writes_need_callers_live_lock(db_session, clock, company, alice, bob, monkeypatch):
    monkeypatch.setattr(settings, "RECORD_LOCK_ENFORCE_WRITES", True)
    locks = RecordLockService(db_session, clock=clock)

    with pytest.raises(RecordLockFailure) as missing:
        versioned_update(
            db_session,
            entity_type="company",
            entity_id=company.id,
            changes={"notes": "no lock"},
            expected_version=1,
            principal=alice,
            lock_service=locks,
        )
    assert missing.value.code == "LOCK_REQUIRED"

    locks.acquire(entity_type="company", entity_id=company.id, principal=alice)
    db_session.commit()

    with pytest.raises(RecordLockFailure) as not_owner:
        versioned_update(
            db_session,
            entity_type="company",
            entity_id=company.id,
            changes={"notes": "bob"},
            expected_version=1,
            principal=bob,
            lock_service=locks,
        )
    assert not_owner.value.code == "LOCK_NOT_OWNER"

    updated = versioned_update(
        db_session,
        entity_type="company",
        entity_id=company.id,
        changes={"notes": "alice"},
        expected_version=1,
        principal=alice,
        lock_service=locks,
    )
    assert updated.version == 2
