from datetime import datetime, timezone

import httpx
import pytest

from casebridge.db.enums import JobKind
from casebridge.db.models import Case, Job, Message, SyncWatermark
from casebridge.services import reconciliation_service, shadow_store

NOW = datetime(2026, 1, 7, 12, 0, tzinfo=timezone.utc)

CASE_PAGE = {
    "results": [
        {"id": 42, "constituentID": 7, "statusID": 1, "updatedAt": "2026-01-05T09:00:00Z"},
        {"id": 43, "constituentID": 7, "statusID": 1, "updatedAt": "2026-01-06T10:00:00Z"},
    ],
    "total": 2,
}


def _watermark(db, office, entity_type):
    db.expire_all()
    return (
        db.query(SyncWatermark)
        .filter(SyncWatermark.office_id == office.id, SyncWatermark.entity_type == entity_type)
        .one()
    )


@pytest.mark.asyncio
async def test_failed_page_does_not_move_watermark(db, office, legacy, fake_legacy, monkeypatch):
    fake_legacy.on("POST", "/cases/search", (200, CASE_PAGE))

    real_upsert = shadow_store.upsert_from_legacy
    calls = {"n": 0}

    def crash_on_second(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("worker died mid-page")
        return real_upsert(*args, **kwargs)

    monkeypatch.setattr(shadow_store, "upsert_from_legacy", crash_on_second)
    with pytest.raises(RuntimeError):
        await reconciliation_service.poll_entity(db, office.id, "case", client=legacy, now=NOW)

    watermark = _watermark(db, office, "case")
    assert watermark.watermark is None
    assert watermark.running_until is None
    assert "worker died" in watermark.last_error
    assert db.query(Case).count() == 0

    monkeypatch.setattr(shadow_store, "upsert_from_legacy", real_upsert)
    replay = await reconciliation_service.poll_entity(db, office.id, "case", client=legacy, now=NOW)

    assert replay.created == 2
    assert db.query(Case).count() == 2
    watermark = _watermark(db, office, "case")
    assert watermark.watermark == datetime(2026, 1, 6, 10, 0, tzinfo=timezone.utc)
    assert watermark.last_error is None

    again = await reconciliation_service.poll_entity(db, office.id, "case", client=legacy, now=NOW)
    assert again.created == 0
    assert db.query(Case).count() == 2

    search = fake_legacy.calls("POST", "/cases/search")[-1][2]
    assert search["dateRange"]["from"] == "2026-01-06T10:00:00Z"
    assert search["pageNo"] == 1


@pytest.mark.asyncio
async def test_new_inbound_messages_are_queued_for_triage(db, office, legacy, fake_legacy):
    fake_legacy.on(
        "POST",
        "/inbox/search",
        (
            200,
            {
                "results": [
                    {
                        "id": 555,
                        "type": "received",
                        "subject": "Housing disrepair",
                        "htmlBody": "<p>Damp everywhere</p>",
                        "from": "stranger@example.net",
                        "receivedAt": "2026-01-06T08:30:00Z",
                    },
                    {
                        "id": 556,
                        "type": "sent",
                        "subject": "Re: Housing disrepair",
                        "sentAt": "2026-01-06T09:00:00Z",
                    },
                ]
            },
        ),
    )

    result = await reconciliation_service.poll_entity(db, office.id, "message", client=legacy, now=NOW)

    assert result.created == 2
    assert len(result.triage_jobs) == 1
    inbound = db.query(Message).filter(Message.external_id == 555).one()
    job = db.get(Job, result.triage_jobs[0])
    assert job.kind == JobKind.TRIAGE_PROCESS.value
    assert job.idempotency_key == f"triage:{inbound.id}"
    assert job.payload == {"message_id": str(inbound.id)}

    # Re-reading the same records schedules nothing new
    replay = await reconciliation_service.poll_entity(db, office.id, "message", client=legacy, now=NOW)
    assert replay.triage_jobs == []
    assert db.query(Job).count() == 1


INBOX_PAGE = {
    "results": [
        {
            "id": 555,
            "type": "received",
            "subject": "Housing disrepair",
            "from": "stranger@example.net",
            "receivedAt": "2026-01-06T08:30:00Z",
        },
    ]
}


@pytest.mark.asyncio
async def test_triage_is_queued_with_the_page_it_came_in(db, office, legacy, fake_legacy, monkeypatch):
    fake_legacy.on("POST", "/inbox/search", (200, INBOX_PAGE))
    real_update = reconciliation_service.update
    updates = []

    def crash_before_watermark(table):
        updates.append(table)
        # 1: poll lease, 2: watermark advance
        if len(updates) == 2:
            raise RuntimeError("worker died before the watermark moved")
        return real_update(table)

    monkeypatch.setattr(reconciliation_service, "update", crash_before_watermark)
    with pytest.raises(RuntimeError):
        await reconciliation_service.poll_entity(db, office.id, "message", client=legacy, now=NOW)

    assert _watermark(db, office, "message").watermark is None
    inbound = db.query(Message).filter(Message.external_id == 555).one()
    assert db.query(Job).filter(Job.idempotency_key == f"triage:{inbound.id}").count() == 1

    monkeypatch.setattr(reconciliation_service, "update", real_update)
    replay = await reconciliation_service.poll_entity(db, office.id, "message", client=legacy, now=NOW)

    assert replay.created == 0
    assert db.query(Message).count() == 1
    assert db.query(Job).filter(Job.kind == JobKind.TRIAGE_PROCESS.value).count() == 1
    assert _watermark(db, office, "message").watermark == datetime(2026, 1, 6, 8, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_crash_mid_page_leaves_no_triage_behind(db, office, legacy, fake_legacy, monkeypatch):
    fake_legacy.on("POST", "/inbox/search", (200, INBOX_PAGE))
    monkeypatch.setattr(reconciliation_service, "_wants_triage", lambda row: 1 / 0)

    with pytest.raises(ZeroDivisionError):
        await reconciliation_service.poll_entity(db, office.id, "message", client=legacy, now=NOW)

    assert db.query(Message).count() == 0
    assert db.query(Job).count() == 0

    monkeypatch.undo()
    replay = await reconciliation_service.poll_entity(db, office.id, "message", client=legacy, now=NOW)
    assert replay.created == 1
    assert len(replay.triage_jobs) == 1


@pytest.mark.asyncio
async def test_cancelled_poll_stops_after_the_current_page(db, office, legacy, fake_legacy, monkeypatch):
    monkeypatch.setattr(reconciliation_service.settings, "SYNC_BATCH_SIZE", 2)

    def first_page_then_cancel(request):
        assert reconciliation_service.request_cancel(db, office.id, "case", now=NOW)
        return httpx.Response(200, json=CASE_PAGE)

    fake_legacy.on("POST", "/cases/search", first_page_then_cancel, (200, {"results": []}))

    result = await reconciliation_service.poll_entity(db, office.id, "case", client=legacy, now=NOW)

    assert result.cancelled is True
    assert result.pages == 1
    assert len(fake_legacy.calls("POST", "/cases/search")) == 1
    assert db.query(Case).count() == 2
    watermark = _watermark(db, office, "case")
    assert watermark.watermark == datetime(2026, 1, 6, 10, 0, tzinfo=timezone.utc)
    assert watermark.last_error == "Cancelled"
    assert watermark.cancel_requested is False
    assert watermark.running_until is None

    # Nothing running any more
    assert reconciliation_service.request_cancel(db, office.id, "case", now=NOW) is False


@pytest.mark.asyncio
async def test_malformed_records_are_skipped_and_counted(db, office, legacy, fake_legacy):
    fake_legacy.on(
        "POST",
        "/cases/search",
        (200, {"results": [{"statusID": 1}, {"id": 44, "updatedAt": "2026-01-06T10:00:00Z"}]}),
    )

    result = await reconciliation_service.poll_entity(db, office.id, "case", client=legacy, now=NOW)

    assert result.invalid == 1
    assert result.created == 1
    assert _watermark(db, office, "case").watermark == datetime(2026, 1, 6, 10, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_running_poll_is_skipped(db, office, legacy, fake_legacy):
    watermark = reconciliation_service.get_watermark(db, office.id, "case")
    watermark.running_until = datetime(2026, 1, 7, 12, 5, tzinfo=timezone.utc)
    db.commit()

    result = await reconciliation_service.poll_entity(db, office.id, "case", client=legacy, now=NOW)

    assert result.skipped is True
    assert fake_legacy.calls("POST", "/cases/search") == []


def test_watermark_status_lists_each_entity(db, office):
    reconciliation_service.get_watermark(db, office.id, "case")
    reconciliation_service.get_watermark(db, office.id, "message")

    status = {row["entity_type"]: row for row in reconciliation_service.watermark_status(db, office.id)}
    assert set(status) == {"case", "message"}
    assert status["case"]["running"] is False
    assert status["case"]["watermark"] is None
