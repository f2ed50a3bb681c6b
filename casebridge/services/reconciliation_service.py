"""
Background reconciliation: pull legacy changes since the watermark.

One poll runs per (office, entity type) at a time, guarded in-process by an
asyncio lock and across processes by the watermark row's ``running_until``
lease. Each page is upserted and committed before the watermark moves, so a
poll that dies mid-page is simply replayed from the old watermark next time.
Legacy search results are treated as ordered by modification time, which is
what lets the watermark advance page by page.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casebridge.acl import AdaptationError, adapt_search_page
from casebridge.acl import filters
from casebridge.core.config import settings
from casebridge.core.structured_logging import build_log_context
from casebridge.db.enums import POLLED_ENTITY_TYPES, JobKind, MessageDirection
from casebridge.db.models import Message, SyncWatermark
from casebridge.db.types import utc_now
from casebridge.services import job_service, shadow_store
from casebridge.services.legacy_client import LegacyApiClient

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    entity_type: str
    skipped: bool = False
    cancelled: bool = False
    pages: int = 0
    seen: int = 0
    upserted: int = 0
    created: int = 0
    conflicts: int = 0
    invalid: int = 0
    watermark: datetime | None = None
    triage_jobs: list[uuid.UUID] = field(default_factory=list)


_poll_locks: dict[tuple[str, str], asyncio.Lock] = {}


def _lock_for(office_id: uuid.UUID, entity_type: str) -> asyncio.Lock:
    key = (str(office_id), entity_type)
    lock = _poll_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _poll_locks[key] = lock
    return lock


def reset_poll_locks() -> None:
    _poll_locks.clear()


def get_watermark(db: Session, office_id: uuid.UUID, entity_type: str) -> SyncWatermark:
    row = db.execute(
        select(SyncWatermark).where(
            SyncWatermark.office_id == office_id, SyncWatermark.entity_type == entity_type
        )
    ).scalars().first()
    if row is not None:
        return row
    row = SyncWatermark(office_id=office_id, entity_type=entity_type)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Another poller created it first
        db.rollback()
        return get_watermark(db, office_id, entity_type)
    return row


def _acquire_poll_lease(db: Session, watermark: SyncWatermark, now: datetime) -> bool:
    result = db.execute(
        update(SyncWatermark)
        .where(
            SyncWatermark.id == watermark.id,
            or_(SyncWatermark.running_until.is_(None), SyncWatermark.running_until < now),
        )
        .values(
            running_until=now + timedelta(seconds=settings.SYNC_POLL_LEASE_SECONDS),
            cancel_requested=False,
            last_poll_started_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _release_poll_lease(db: Session, watermark_id: uuid.UUID, error: str | None) -> None:
    values = {"running_until": None, "cancel_requested": False, "last_error": error}
    if error is None:
        values["last_poll_completed_at"] = utc_now()
    db.execute(
        update(SyncWatermark)
        .where(SyncWatermark.id == watermark_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def request_cancel(
    db: Session, office_id: uuid.UUID, entity_type: str, *, now: datetime | None = None
) -> bool:
    """Ask a running poll to stop after its current page. False when none is running."""
    now = now or utc_now()
    result = db.execute(
        update(SyncWatermark)
        .where(
            SyncWatermark.office_id == office_id,
            SyncWatermark.entity_type == entity_type,
            SyncWatermark.running_until.is_not(None),
            SyncWatermark.running_until > now,
        )
        .values(cancel_requested=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(
            "Poll cancellation requested",
            extra=build_log_context(office_id=office_id, entity_type=entity_type),
        )
    return result.rowcount == 1


def _cancel_requested(db: Session, watermark_id: uuid.UUID) -> bool:
    return bool(
        db.execute(
            select(SyncWatermark.cancel_requested).where(SyncWatermark.id == watermark_id)
        ).scalar()
    )


def _max(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _wants_triage(row) -> bool:
    return (
        isinstance(row, Message)
        and row.direction == MessageDirection.INBOUND.value
        and not row.actioned
    )


async def poll_entity(
    db: Session,
    office_id: uuid.UUID,
    entity_type: str,
    *,
    client: LegacyApiClient,
    full: bool = False,
    now: datetime | None = None,
) -> PollResult:
    """Run one reconciliation cycle for an office and entity type."""
    result = PollResult(entity_type=entity_type)
    lock = _lock_for(office_id, entity_type)
    if lock.locked():
        result.skipped = True
        return result

    async with lock:
        now = now or utc_now()
        watermark = get_watermark(db, office_id, entity_type)
        if not _acquire_poll_lease(db, watermark, now):
            logger.info(
                "Poll already running elsewhere",
                extra=build_log_context(office_id=office_id, entity_type=entity_type),
            )
            result.skipped = True
            return result

        watermark_id = watermark.id
        since = None if full else watermark.watermark
        log_context = build_log_context(office_id=office_id, entity_type=entity_type)
        try:
            for page_no in range(1, settings.SYNC_MAX_PAGES + 1):
                if page_no > 1 and _cancel_requested(db, watermark_id):
                    result.cancelled = True
                    logger.info("Poll cancelled after %s pages", result.pages, extra=log_context)
                    break
                request = filters.modified_since(entity_type, since, now, page_no, settings.SYNC_BATCH_SIZE)
                response = await client.send(request)
                page = adapt_search_page(response, page=page_no, limit=settings.SYNC_BATCH_SIZE)

                page_max: datetime | None = None
                new_messages: list[uuid.UUID] = []
                conflicts = 0
                upserted = 0
                for record in page.records:
                    try:
                        upsert = shadow_store.upsert_from_legacy(
                            db, office_id, entity_type, record, now=now
                        )
                    except AdaptationError as exc:
                        # Malformed records will not improve on replay
                        result.invalid += 1
                        logger.warning("Skipping legacy record: %s", exc, extra=log_context)
                        continue
                    if not upsert.stale:
                        upserted += 1
                    if upsert.conflict:
                        conflicts += 1
                    if upsert.created:
                        result.created += 1
                        if _wants_triage(upsert.entity):
                            new_messages.append(upsert.entity.id)
                    page_max = _max(page_max, upsert.entity.legacy_updated_at)

                # Triage is queued in the page transaction so a crash cannot lose it
                for message_id in new_messages:
                    job = job_service.schedule_job(
                        db,
                        JobKind.TRIAGE_PROCESS.value,
                        {"message_id": str(message_id)},
                        office_id=office_id,
                        idempotency_key=f"triage:{message_id}",
                        commit=False,
                    )
                    result.triage_jobs.append(job.id)

                # The page is durable before the watermark moves
                db.commit()

                db.execute(
                    update(SyncWatermark)
                    .where(SyncWatermark.id == watermark_id)
                    .values(
                        watermark=_max(watermark.watermark, page_max),
                        cursor=str(page_no),
                        records_seen=SyncWatermark.records_seen + len(page.records),
                        records_upserted=SyncWatermark.records_upserted + upserted,
                        conflicts=SyncWatermark.conflicts + conflicts,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                db.refresh(watermark)

                result.pages += 1
                result.seen += len(page.records)
                result.upserted += upserted
                result.conflicts += conflicts

                if not page.has_more:
                    break
            else:
                logger.info(
                    "Poll stopped at page ceiling (%s); continuing next cycle",
                    settings.SYNC_MAX_PAGES,
                    extra=log_context,
                )
        except Exception as exc:
            db.rollback()
            logger.exception("Reconciliation poll failed", extra=log_context)
            _release_poll_lease(db, watermark_id, str(exc)[:2000])
            raise

        _release_poll_lease(db, watermark_id, "Cancelled" if result.cancelled else None)
        db.refresh(watermark)
        result.watermark = watermark.watermark
        logger.info(
            "Poll finished: %s pages, %s records, %s conflicts",
            result.pages,
            result.seen,
            result.conflicts,
            extra=log_context,
        )
        return result


async def poll_office(
    db: Session, office_id: uuid.UUID, *, client: LegacyApiClient, full: bool = False
) -> list[PollResult]:
    """Poll every mirrored entity type for an office, parents first."""
    results = []
    for entity_type in POLLED_ENTITY_TYPES:
        results.append(await poll_entity(db, office_id, entity_type.value, client=client, full=full))
    return results


def watermark_status(db: Session, office_id: uuid.UUID) -> list[dict]:
    rows = db.execute(
        select(SyncWatermark).where(SyncWatermark.office_id == office_id)
    ).scalars()
    return [
        {
            "entity_type": row.entity_type,
            "watermark": row.watermark,
            "running": row.running_until is not None and row.running_until > utc_now(),
            "cancel_requested": row.cancel_requested,
            "last_poll_started_at": row.last_poll_started_at,
            "last_poll_completed_at": row.last_poll_completed_at,
            "records_seen": row.records_seen,
            "records_upserted": row.records_upserted,
            "conflicts": row.conflicts,
            "last_error": row.last_error,
        }
        for row in rows
    ]
