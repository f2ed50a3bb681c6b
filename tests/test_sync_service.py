from datetime import timedelta

import httpx
import pytest

from casebridge.db.enums import JobKind
from casebridge.db.models import Case, Constituent, ContactDetail, Message
from casebridge.db.types import utc_now
from casebridge.services import job_service, shadow_store, sync_service
from casebridge.services.sync_service import (
    Committed,
    EntityChange,
    PermanentSyncError,
    QueuedForRetry,
    Rejected,
)


def _claim_next(db):
    return job_service.claim_job(db, "test-worker", now=utc_now() + timedelta(minutes=5))


@pytest.mark.asyncio
async def test_create_survives_legacy_outage(db, office, constituent, legacy, fake_legacy):
    fake_legacy.on("POST", "/cases", (503, {"message": "maintenance"}))

    outcome = await sync_service.commit(
        db,
        office.id,
        EntityChange("case", "create", {"constituent_id": constituent.id, "case_type_id": 11, "summary": "Damp"}),
        client=legacy,
    )

    assert isinstance(outcome, QueuedForRetry)
    row = db.get(Case, outcome.entity_id)
    # Optimistic row stays visible while the push is queued
    assert row.pending_sync is True
    assert row.external_id is None
    assert row.summary == "Damp"

    job = _claim_next(db)
    assert job.id == outcome.job_id
    assert job.kind == JobKind.SYNC_PUSH.value

    fake_legacy.on("POST", "/cases", (200, {"id": 501}))
    result = await sync_service.push_queued(db, job, client=legacy)

    assert result == {"status": "committed", "external_id": 501}
    db.refresh(row)
    assert row.external_id == 501
    assert row.pending_sync is False
    assert row.pending_fields == []
    sent = fake_legacy.calls("POST", "/cases")[-1][2]
    assert sent == {"constituentID": 7, "caseTypeID": 11, "summary": "Damp"}


@pytest.mark.asyncio
async def test_rejected_create_is_removed(db, office, constituent, legacy, fake_legacy):
    fake_legacy.on("POST", "/cases", (422, {"message": "caseTypeID is invalid"}))

    outcome = await sync_service.commit(
        db,
        office.id,
        EntityChange("case", "create", {"constituent_id": constituent.id, "case_type_id": 999}),
        client=legacy,
    )

    assert isinstance(outcome, Rejected)
    assert outcome.reason == "caseTypeID is invalid"
    assert outcome.entity_id is None
    assert db.query(Case).count() == 0


@pytest.mark.asyncio
async def test_rejected_update_restores_previous_values(db, office, case, legacy, fake_legacy):
    fake_legacy.on("PATCH", "/cases/42", (422, {"message": "statusID is invalid"}))

    outcome = await sync_service.commit(
        db, office.id, EntityChange("case", "update", {"status_id": 77}, entity_id=case.id), client=legacy
    )

    assert isinstance(outcome, Rejected)
    db.refresh(case)
    assert case.status_id == 1
    assert case.pending_sync is False
    assert case.pending_fields == []


@pytest.mark.asyncio
async def test_rejection_keeps_a_newer_edit_made_in_flight(db, office, case, legacy, fake_legacy):
    def edit_then_reject(request):
        case.summary = "Damp and mould"
        shadow_store.mark_pending_sync(case, ["summary"])
        db.commit()
        return httpx.Response(422, json={"message": "statusID is invalid"})

    fake_legacy.on("PATCH", "/cases/42", edit_then_reject)

    outcome = await sync_service.commit(
        db, office.id, EntityChange("case", "update", {"status_id": 77}, entity_id=case.id), client=legacy
    )

    assert isinstance(outcome, Rejected)
    db.refresh(case)
    assert case.status_id == 1
    assert case.summary == "Damp and mould"
    assert case.pending_fields == ["summary"]
    assert case.pending_sync is True


@pytest.mark.asyncio
async def test_ambiguous_update_that_landed_is_not_resent(db, office, case, legacy, fake_legacy):
    fake_legacy.on("PATCH", "/cases/42", httpx.ReadTimeout)
    fake_legacy.on("GET", "/cases/42", (200, {"id": 42, "constituentID": 7, "statusID": 3}))

    outcome = await sync_service.commit(
        db, office.id, EntityChange("case", "update", {"status_id": 3}, entity_id=case.id), client=legacy
    )

    assert isinstance(outcome, Committed)
    assert outcome.external_id == 42
    assert len(fake_legacy.calls("PATCH", "/cases/42")) == 1
    assert len(fake_legacy.calls("GET", "/cases/42")) == 1
    db.refresh(case)
    assert case.status_id == 3
    assert case.pending_sync is False


@pytest.mark.asyncio
async def test_ambiguous_update_that_did_not_land_is_queued(db, office, case, legacy, fake_legacy):
    fake_legacy.on("PATCH", "/cases/42", httpx.ReadTimeout)
    fake_legacy.on("GET", "/cases/42", (200, {"id": 42, "constituentID": 7, "statusID": 1}))

    outcome = await sync_service.commit(
        db, office.id, EntityChange("case", "update", {"status_id": 3}, entity_id=case.id), client=legacy
    )

    assert isinstance(outcome, QueuedForRetry)
    job = _claim_next(db)
    assert job.payload["ambiguous"] is True
    assert job.payload["fields"] == ["status_id"]


@pytest.mark.asyncio
async def test_shadow_only_update_never_calls_legacy(db, office, case, legacy, fake_legacy):
    outcome = await sync_service.commit(
        db,
        office.id,
        EntityChange("case", "update", {"priority": "high", "tags": ["damp"]}, entity_id=case.id),
        client=legacy,
    )

    assert isinstance(outcome, Committed)
    assert fake_legacy.requests == []
    db.refresh(case)
    assert case.priority == "high"
    assert case.pending_sync is False


@pytest.mark.asyncio
async def test_queued_push_rejected_flags_the_row(db, office, case, legacy, fake_legacy):
    fake_legacy.on("PATCH", "/cases/42", (503, {}))
    outcome = await sync_service.commit(
        db, office.id, EntityChange("case", "update", {"summary": "Mould"}, entity_id=case.id), client=legacy
    )
    assert isinstance(outcome, QueuedForRetry)

    fake_legacy.on("PATCH", "/cases/42", (400, {"message": "summary too long"}))
    job = _claim_next(db)
    with pytest.raises(PermanentSyncError):
        await sync_service.push_queued(db, job, client=legacy)

    db.refresh(case)
    assert case.summary == "Mould"
    assert case.pending_sync is True
    assert "summary too long" in case.sync_error


@pytest.mark.asyncio
async def test_newer_local_edit_survives_slow_retry(db, office, case, legacy, fake_legacy):
    fake_legacy.on("PATCH", "/cases/42", (503, {}))
    await sync_service.commit(
        db, office.id, EntityChange("case", "update", {"summary": "Mould"}, entity_id=case.id), client=legacy
    )
    job = _claim_next(db)

    fake_legacy.on("PATCH", "/cases/42", (200, {"id": 42}))
    result = await sync_service.push_queued(db, job, client=legacy)

    assert result["status"] == "committed"
    assert fake_legacy.calls("PATCH", "/cases/42")[-1][2] == {"summary": "Mould"}
    db.refresh(case)
    assert case.pending_sync is False


@pytest.mark.asyncio
async def test_create_constituent_and_contact_detail(db, office, reference_data, legacy, fake_legacy):
    fake_legacy.on("POST", "/constituents", (200, {"id": 8}))
    fake_legacy.on("POST", "/contactDetails", (200, {"id": 80}))

    outcome = await sync_service.create_constituent(
        db, office.id, client=legacy, first_name="Sam", last_name="Patel"
    )
    assert isinstance(outcome, Committed)
    assert outcome.external_id == 8

    detail = await sync_service.add_contact_detail(
        db, office.id, outcome.entity_id, client=legacy, contact_type="email", value=" Sam@Example.org "
    )
    assert isinstance(detail, Committed)
    assert detail.external_id == 80
    body = fake_legacy.calls("POST", "/contactDetails")[0][2]
    assert body["constituentID"] == 8
    assert body["contactTypeID"] == reference_data["Email"]
    assert body["value"] == "Sam@Example.org"

    duplicate = await sync_service.add_contact_detail(
        db, office.id, outcome.entity_id, client=legacy, contact_type="email", value="sam@example.org"
    )
    assert isinstance(duplicate, Rejected)
    assert db.query(ContactDetail).count() == 1
    assert db.query(Constituent).count() == 1


def test_describe_outcome():
    queued = sync_service.describe_outcome(Rejected(entity_id=None, reason="nope"))
    assert queued == {"status": "rejected", "entity_id": None, "reason": "nope"}


@pytest.mark.asyncio
async def test_assign_and_action_message(db, office, make_message, legacy, fake_legacy):
    message = make_message()
    fake_legacy.on("PATCH", "/emails/555", (200, {"id": 555}))

    assigned = await sync_service.assign_message(db, office.id, message.id, 3, client=legacy)
    actioned = await sync_service.mark_message_actioned(db, office.id, message.id, client=legacy)

    assert isinstance(assigned, Committed)
    assert isinstance(actioned, Committed)
    bodies = [body for _, _, body in fake_legacy.calls("PATCH", "/emails/555")]
    assert bodies == [{"assignedToID": 3}, {"actioned": True}]
    db.refresh(message)
    assert message.assigned_to_id == 3
    assert message.actioned is True
    assert message.pending_sync is False


@pytest.mark.asyncio
async def test_add_case_note(db, office, case, legacy, fake_legacy):
    fake_legacy.on("POST", "/cases/42/notes", (200, {"id": 9}))

    outcome = await sync_service.add_case_note(db, office.id, case.id, "Called back", client=legacy)

    assert outcome == Committed(entity_id=case.id, external_id=9)
    [(_, _, body)] = fake_legacy.calls("POST", "/cases/42/notes")
    assert body == {"type": "note", "content": "Called back"}


@pytest.mark.asyncio
async def test_note_on_unsynced_case_waits(db, office, case, legacy):
    case.external_id = None
    db.commit()

    with pytest.raises(sync_service.DependencyPending):
        await sync_service.add_case_note(db, office.id, case.id, "Called back", client=legacy)


@pytest.mark.asyncio
async def test_create_and_send_draft(db, office, case, legacy, fake_legacy):
    fake_legacy.on("POST", "/emails", (200, {"id": 777}))
    fake_legacy.on("POST", "/emails/777/send", (200, {"ok": True}))

    outcome = await sync_service.create_draft(
        db,
        office.id,
        to=["jane@example.org"],
        subject="Your case",
        html_body="<p>Update</p>",
        case_id=case.id,
        send=True,
        client=legacy,
    )

    assert isinstance(outcome, Committed)
    assert outcome.external_id == 777
    [(_, _, body)] = fake_legacy.calls("POST", "/emails")
    assert body["caseID"] == 42
    message = db.get(Message, outcome.entity_id)
    assert message.direction == "outbound"
    assert message.case_id == case.id
    assert message.sent_at is not None
    assert message.pending_sync is False


@pytest.mark.asyncio
async def test_draft_without_recipients_is_rejected(db, office, legacy, fake_legacy):
    outcome = await sync_service.create_draft(
        db, office.id, to=[], subject="x", html_body="x", client=legacy
    )

    assert isinstance(outcome, Rejected)
    assert fake_legacy.calls("POST", "/emails") == []
    assert db.query(Message).count() == 0


@pytest.mark.asyncio
async def test_ambiguous_constituent_create_is_found_by_name(db, office, legacy, fake_legacy):
    fake_legacy.on("POST", "/constituents", httpx.ReadTimeout, (200, {"id": 901}))
    fake_legacy.on("POST", "/constituents/search", (200, {"results": []}), (200, {"results": [{"id": 900, "lastName": "Roe"}]}))

    outcome = await sync_service.create_constituent(db, office.id, client=legacy, first_name=None, last_name="Roe")

    assert isinstance(outcome, QueuedForRetry)
    job = _claim_next(db)
    assert job.payload["ambiguous"] is True

    result = await sync_service.push_queued(db, job, client=legacy)

    assert result == {"status": "committed", "external_id": 900, "reconciled": True}
    assert len(fake_legacy.calls("POST", "/constituents")) == 1
    searches = fake_legacy.calls("POST", "/constituents/search")
    assert [body["term"] for _, _, body in searches] == ["Roe", "Roe"]
    assert db.get(Constituent, outcome.entity_id).external_id == 900


@pytest.mark.asyncio
async def test_ambiguous_constituent_create_skips_someone_already_mirrored(db, office, constituent, legacy, fake_legacy):
    fake_legacy.on("POST", "/constituents", httpx.ReadTimeout)
    fake_legacy.on("POST", "/constituents/search", (200, [{"id": 7, "firstName": "Jane", "lastName": "Doe"}]))

    outcome = await sync_service.create_constituent(db, office.id, client=legacy, first_name="Jane", last_name="Doe")

    # Legacy id 7 is the existing Jane Doe, not the new one
    assert isinstance(outcome, QueuedForRetry)
    assert db.get(Constituent, outcome.entity_id).external_id is None
