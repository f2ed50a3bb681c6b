"""Outbound email queue.

Write paths insert a row here and schedule an ``email_deliver`` job; the job
handler sends it through the automation bot.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.orm import Session

from casebridge.core.config import settings
from casebridge.core.structured_logging import build_log_context, mask_email
from casebridge.db.enums import JobKind, OutboxStatus
from casebridge.db.models import OutboxMessage
from casebridge.db.types import utc_now
from casebridge.services import job_service

logger = logging.getLogger(__name__)


class OutboxError(Exception):
    pass


class OutboxMessageNotFound(OutboxError):
    pass


def enqueue_email(
    db: Session,
    office_id: uuid.UUID,
    *,
    to: list[str],
    subject: str,
    body_html: str,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    related_case_id: uuid.UUID | None = None,
    campaign_id: uuid.UUID | None = None,
    message_id: uuid.UUID | None = None,
    commit: bool = True,
) -> OutboxMessage:
    if not to:
        raise OutboxError("Outbound email needs at least one recipient")
    row = OutboxMessage(
        office_id=office_id,
        to_addresses=list(to),
        cc_addresses=list(cc or []),
        bcc_addresses=list(bcc or []),
        subject=subject,
        body_html=body_html,
        related_case_id=related_case_id,
        campaign_id=campaign_id,
        message_id=message_id,
        status=OutboxStatus.PENDING.value,
    )
    db.add(row)
    db.flush()
    job_service.schedule_job(
        db,
        JobKind.EMAIL_DELIVER.value,
        {"outbox_id": str(row.id)},
        office_id=office_id,
        idempotency_key=f"email_deliver:{row.id}",
        commit=False,
    )
    if commit:
        db.commit()
    logger.info(
        "Queued email to %s",
        ", ".join(mask_email(addr) for addr in row.to_addresses),
        extra=build_log_context(office_id=office_id),
    )
    return row


def get_message(db: Session, outbox_id: uuid.UUID) -> OutboxMessage:
    row = db.get(OutboxMessage, outbox_id)
    if row is None:
        raise OutboxMessageNotFound(f"Outbox message {outbox_id} not found")
    return row


def mark_processing(db: Session, row: OutboxMessage) -> None:
    row.status = OutboxStatus.PROCESSING.value
    row.attempts += 1
    db.commit()


def mark_sent(db: Session, row: OutboxMessage, *, now: datetime | None = None) -> None:
    row.status = OutboxStatus.SENT.value
    row.processed_at = now or utc_now()
    db.commit()


def mark_failed(
    db: Session,
    row: OutboxMessage,
    error: str,
    *,
    final: bool,
    now: datetime | None = None,
) -> None:
    """Record a delivery error. Non-final failures return the row to pending."""
    now = now or utc_now()
    row.error_log = [*(row.error_log or []), {"at": now.isoformat(), "error": error[:1000]}]
    if final:
        row.status = OutboxStatus.FAILED.value
        row.processed_at = now
    else:
        row.status = OutboxStatus.PENDING.value
    db.commit()


def purge_processed(
    db: Session, *, older_than_days: int | None = None, now: datetime | None = None
) -> int:
    """Delete sent and failed rows past the retention window."""
    days = settings.QUEUE_RETENTION_DAYS if older_than_days is None else older_than_days
    cutoff = (now or utc_now()) - timedelta(days=days)
    result = db.execute(
        delete(OutboxMessage).where(
            OutboxMessage.status.in_([OutboxStatus.SENT.value, OutboxStatus.FAILED.value]),
            OutboxMessage.processed_at < cutoff,
        )
    )
    db.commit()
    return result.rowcount or 0
