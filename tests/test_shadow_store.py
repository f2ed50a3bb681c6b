from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from casebridge.acl import AdaptationError
from casebridge.db.enums import ConflictResolution
from casebridge.db.models import Case, Constituent, ContactDetail, SyncConflictLog
from casebridge.services import shadow_store

NOW = datetime(2026, 1, 6, 12, 0, tzinfo=timezone.utc)

JANE = {
    "id": 7,
    "firstName": "Jane",
    "lastName": "Doe",
    "contactDetails": [{"id": 70, "contactTypeID": 31, "value": "Jane.Doe@Example.org"}],
    "updatedAt": "2026-01-05T09:00:00Z",
}


def test_upsert_is_idempotent_on_external_id(db, office):
    first = shadow_store.upsert_from_legacy(db, office.id, "constituent", JANE, now=NOW)
    db.commit()
    second = shadow_store.upsert_from_legacy(db, office.id, "constituent", JANE, now=NOW)
    db.commit()

    assert first.created is True
    assert second.created is False
    assert second.changed is False
    assert first.entity.id == second.entity.id
    assert db.query(Constituent).count() == 1

    details = db.query(ContactDetail).all()
    assert len(details) == 1
    assert details[0].normalized_value == "jane.doe@example.org"
    assert details[0].constituent_id == first.entity.id


def test_contact_detail_dropped_by_legacy_is_soft_deleted(db, office):
    shadow_store.upsert_from_legacy(db, office.id, "constituent", JANE, now=NOW)
    db.commit()
    moved = {
        **JANE,
        "contactDetails": [{"id": 71, "contactTypeID": 31, "value": "jane@new.example.org"}],
        "updatedAt": "2026-01-06T09:00:00Z",
    }

    shadow_store.upsert_from_legacy(db, office.id, "constituent", moved, now=NOW)
    db.commit()

    old = shadow_store.get_by_external_id(db, office.id, "contact_detail", 70, include_deleted=True)
    assert old.deleted_at is not None
    assert shadow_store.get_by_external_id(db, office.id, "contact_detail", 70) is None
    assert shadow_store.get_by_external_id(db, office.id, "contact_detail", 71).value == "jane@new.example.org"


def test_stale_record_is_ignored(db, office, case):
    result = shadow_store.upsert_from_legacy(
        db,
        office.id,
        "case",
        {"id": 42, "constituentID": 7, "statusID": 9, "summary": "Old", "updatedAt": "2026-01-04T00:00:00Z"},
        now=NOW,
    )
    db.commit()

    assert result.stale is True
    db.refresh(case)
    assert case.status_id == 1
    assert case.summary == "Damp in bedroom"


def test_legacy_change_merges_with_pending_local_edit(db, office, case):
    case.status_id = 2
    shadow_store.mark_pending_sync(
        case, ["status_id"], now=datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    )
    db.commit()

    result = shadow_store.upsert_from_legacy(
        db,
        office.id,
        "case",
        {
            "id": 42,
            "constituentID": 7,
            "caseTypeID": 11,
            "statusID": 5,
            "summary": "New",
            "updatedAt": "2026-01-05T11:00:00Z",
        },
        now=NOW,
    )
    db.commit()

    assert result.conflict is not None
    assert result.conflict.resolution == ConflictResolution.MERGED
    assert result.conflict.fields == ["status_id", "summary"]

    db.refresh(case)
    # local edit kept, legacy-only change applied
    assert case.status_id == 2
    assert case.summary == "New"
    assert case.pending_sync is True
    assert case.pending_fields == ["status_id"]
    assert case.legacy_updated_at == datetime(2026, 1, 5, 11, 0, tzinfo=timezone.utc)

    logged = db.execute(select(SyncConflictLog)).scalars().one()
    assert logged.resolution == ConflictResolution.MERGED.value
    assert logged.external_id == 42
    assert logged.local_values["status_id"] == 2
    assert logged.legacy_values["status_id"] == 5


def test_legacy_catching_up_clears_pending_flag(db, office, case):
    case.status_id = 3
    shadow_store.mark_pending_sync(
        case, ["status_id"], now=datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    )
    db.commit()

    shadow_store.upsert_from_legacy(
        db,
        office.id,
        "case",
        {
            "id": 42,
            "constituentID": 7,
            "caseTypeID": 11,
            "statusID": 3,
            "summary": "Damp in bedroom",
            "updatedAt": "2026-01-05T11:00:00Z",
        },
        now=NOW,
    )
    db.commit()

    db.refresh(case)
    assert case.pending_sync is False
    assert case.pending_fields == []
    assert db.query(SyncConflictLog).count() == 0


def test_case_links_to_known_constituent(db, office, constituent):
    result = shadow_store.upsert_from_legacy(
        db, office.id, "case", {"id": 43, "constituentID": 7, "statusID": 1}, now=NOW
    )
    db.commit()
    assert result.entity.constituent_id == constituent.id
    assert db.query(Case).count() == 1


def test_malformed_record_raises_adaptation_error(db, office):
    with pytest.raises(AdaptationError):
        shadow_store.upsert_from_legacy(db, office.id, "case", {"summary": "no id"}, now=NOW)


def test_record_synced_refuses_to_remap(db, office, case):
    with pytest.raises(shadow_store.ExternalIdMismatch):
        shadow_store.record_synced(case, 99)

    shadow_store.record_synced(case, 42, now=NOW)
    assert case.pending_sync is False
    assert case.last_synced_at == NOW


def test_normalize_contact_value():
    assert shadow_store.normalize_contact_value("email", " Jane@Example.ORG ") == "jane@example.org"
    assert shadow_store.normalize_contact_value("phone", "+44 (0)20 7946 0000") == "4402079460000"
