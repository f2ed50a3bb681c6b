"""Outbox delivery job handler."""

from __future__ import annotations

import logging
from uuid import UUID

from casebridge.core.structured_logging import build_log_context, mask_email
from casebridge.db.enums import OutboxStatus
from casebridge.jobs.utils import JobFailed, JobRetry, is_final_attempt
from casebridge.services import automation_lease_service, outbox_service
from casebridge.services.automation_client import AutomationError, get_automation_client

logger = logging.getLogger(__name__)

LEASE_BUSY_RETRY_SECONDS = 30


async def process_email_deliver(db, job) -> dict:
    payload = job.payload or {}
    outbox_id = payload.get("outbox_id")
    if not outbox_id:
        raise JobFailed("Missing outbox_id in job payload")
    try:
        row = outbox_service.get_message(db, UUID(outbox_id))
    except outbox_service.OutboxMessageNotFound as exc:
        raise JobFailed(str(exc)) from exc
    if row.status == OutboxStatus.SENT.value:
        return {"status": "already_sent", "outbox_id": outbox_id}

    log_context = build_log_context(office_id=job.office_id, job_id=job.id, kind=job.kind)
    result = automation_lease_service.acquire(db, job.office_id, f"email_deliver:{job.id}:{job.attempt_count}")
    if isinstance(result, automation_lease_service.Denied):
        message = f"Automation session held by {result.holder_id}"
        if is_final_attempt(job):
            outbox_service.mark_failed(db, row, message, final=True)
            raise JobFailed(message)
        raise JobRetry(message, delay_seconds=LEASE_BUSY_RETRY_SECONDS)

    lease = result.lease
    try:
        outbox_service.mark_processing(db, row)
        response = await get_automation_client().send_email(
            job.office_id,
            to=list(row.to_addresses),
            cc=list(row.cc_addresses),
            bcc=list(row.bcc_addresses),
            subject=row.subject,
            body_html=row.body_html,
            reference=str(row.id),
        )
        outbox_service.mark_sent(db, row)
    except AutomationError as exc:
        final = not exc.retryable or is_final_attempt(job)
        outbox_service.mark_failed(db, row, str(exc), final=final)
        if final:
            raise JobFailed(str(exc)) from exc
        raise JobRetry(str(exc)) from exc
    finally:
        automation_lease_service.release(db, lease)

    logger.info(
        "Email delivered to %s",
        ", ".join(mask_email(addr) for addr in row.to_addresses),
        extra=log_context,
    )
    return {"status": "sent", "outbox_id": outbox_id, "reference": response.get("id")}
