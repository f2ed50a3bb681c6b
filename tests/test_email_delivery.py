import json
from datetime import timedelta

import httpx
import pytest

from casebridge import worker
from casebridge.db.enums import JobKind, JobState, OutboxStatus
from casebridge.db.models import Job
from casebridge.db.types import utc_now
from casebridge.jobs.handlers import email as email_handler
from casebridge.services import automation_lease_service, job_service, outbox_service
from casebridge.services.automation_client import AutomationClient


@pytest.fixture
def bot(monkeypatch):
    """Scripted automation bot; set ``bot.status`` to make it fail."""

    class Bot:
        status = 200
        sent: list[dict] = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.sent.append(json.loads(request.content))
            if self.status >= 400:
                return httpx.Response(self.status, json={"error": "nope"})
            return httpx.Response(200, json={"id": "bot-msg-1"})

    fake = Bot()
    fake.sent = []
    monkeypatch.setattr(
        email_handler,
        "get_automation_client",
        lambda: AutomationClient(base_url="http://bot.test", transport=httpx.MockTransport(fake.handler)),
    )
    return fake


def _queue_email(db, office):
    row = outbox_service.enqueue_email(
        db,
        office.id,
        to=["jane.doe@example.org"],
        subject="Re: Housing disrepair",
        body_html="<p>We have opened a case.</p>",
    )
    job = job_service.claim_job(db, "test-worker", kinds=[JobKind.EMAIL_DELIVER.value])
    return row, job


@pytest.mark.asyncio
async def test_email_is_sent_under_the_lease(db, office, bot):
    row, job = _queue_email(db, office)
    assert job.idempotency_key == f"email_deliver:{row.id}"

    state = await worker.run_job(db, job, "test-worker")

    assert state == JobState.COMPLETED.value
    db.refresh(row)
    assert row.status == OutboxStatus.SENT.value
    assert row.attempts == 1
    assert bot.sent[0]["to"] == ["jane.doe@example.org"]
    assert bot.sent[0]["reference"] == str(row.id)
    assert job.output["reference"] == "bot-msg-1"
    assert automation_lease_service.current_lease(db) is None


@pytest.mark.asyncio
async def test_busy_lease_defers_delivery(db, office, bot):
    automation_lease_service.acquire(db, office.id, "interactive-login", 300)
    row, job = _queue_email(db, office)

    state = await worker.run_job(db, job, "test-worker")

    assert state == JobState.RETRY.value
    assert job.next_attempt_at >= utc_now() + timedelta(seconds=25)
    assert bot.sent == []
    db.refresh(row)
    assert row.status == OutboxStatus.PENDING.value
    assert automation_lease_service.current_lease(db).holder_id == "interactive-login"


@pytest.mark.asyncio
async def test_refused_email_fails_permanently(db, office, bot):
    bot.status = 400
    row, job = _queue_email(db, office)

    state = await worker.run_job(db, job, "test-worker")

    assert state == JobState.FAILED.value
    db.refresh(row)
    assert row.status == OutboxStatus.FAILED.value
    assert len(row.error_log) == 1
    assert automation_lease_service.current_lease(db) is None


@pytest.mark.asyncio
async def test_bot_outage_is_retried(db, office, bot):
    bot.status = 503
    row, job = _queue_email(db, office)

    state = await worker.run_job(db, job, "test-worker")

    assert state == JobState.RETRY.value
    db.refresh(row)
    assert row.status == OutboxStatus.PENDING.value
    assert row.error_log[0]["error"].startswith("Automation bot returned 503")


@pytest.mark.asyncio
async def test_already_sent_email_is_not_resent(db, office, bot):
    row, job = _queue_email(db, office)
    outbox_service.mark_sent(db, row)

    state = await worker.run_job(db, job, "test-worker")

    assert state == JobState.COMPLETED.value
    assert bot.sent == []


def test_purge_processed_outbox(db, office):
    row = outbox_service.enqueue_email(db, office.id, to=["a@example.org"], subject="s", body_html="b")
    outbox_service.mark_sent(db, row, now=utc_now() - timedelta(days=30))
    outbox_service.enqueue_email(db, office.id, to=["b@example.org"], subject="s", body_html="b")

    assert outbox_service.purge_processed(db) == 1
    assert db.query(Job).filter(Job.kind == JobKind.EMAIL_DELIVER.value).count() == 2


def test_outbox_needs_a_recipient(db, office):
    with pytest.raises(outbox_service.OutboxError):
        outbox_service.enqueue_email(db, office.id, to=[], subject="s", body_html="b")


@pytest.mark.asyncio
async def test_later_attempt_waits_for_a_stalled_earlier_one(db, office, bot):
    row, job = _queue_email(db, office)
    # Attempt 1 still holds the session after its job lease lapsed
    automation_lease_service.acquire(db, office.id, f"email_deliver:{job.id}:1", 300)
    job.attempt_count = 2
    db.commit()

    state = await worker.run_job(db, job, "test-worker")

    assert state == JobState.RETRY.value
    assert bot.sent == []
    assert automation_lease_service.current_lease(db).holder_id == f"email_deliver:{job.id}:1"
