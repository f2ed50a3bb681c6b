"""
Dual-write sync engine.

A local mutation is written to the shadow store first (optimistically, with
``pending_sync`` set), then pushed to the legacy API straight away:

- success -> the row is marked synced and the caller gets ``Committed``;
- transient failure -> a ``sync_push`` job retries in the background and the
  caller gets ``QueuedForRetry``; the optimistic value stays visible;
- ambiguous outcome -> legacy is read back by natural key first, and only if
  the change is not there is the write queued for retry;
- permanent failure -> the optimistic write is undone and the caller gets
  ``Rejected`` with the legacy reason.

Retries always send the row's current values, and only clear the pending
fields whose value still equals what was sent, so a slow retry cannot undo a
newer local edit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Union

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from casebridge.acl import (
    CREATE,
    UPDATE,
    AdaptationError,
    LegacyRequest,
    adapt_contact_detail,
    adapt_created_id,
    adapt_search_page,
    case_note_payload,
    draft_email_payload,
    entity_path,
    matches_legacy,
    to_legacy_payload,
)
from casebridge.acl import filters
from casebridge.core.config import settings
from casebridge.core.structured_logging import build_log_context
from casebridge.db.enums import EntityType, JobKind, JobState, MessageDirection, ReferenceType, TriageStatus
from casebridge.db.models import Constituent, ContactDetail, Job, Message
from casebridge.db.types import utc_now
from casebridge.services import job_service, reference_data_service, shadow_store
from casebridge.services.legacy_client import (
    Ambiguous,
    AuthExpired,
    Forbidden,
    LegacyApiClient,
    LegacyApiError,
    NotFound,
    ValidationRejected,
)

logger = logging.getLogger(__name__)

WRITABLE_ENTITY_TYPES = (
    EntityType.CONSTITUENT.value,
    EntityType.CONTACT_DETAIL.value,
    EntityType.CASE.value,
    EntityType.MESSAGE.value,
)


# =============================================================================
# Outcomes and errors
# =============================================================================


@dataclass(frozen=True)
class Committed:
    entity_id: uuid.UUID | None
    external_id: int | None


@dataclass(frozen=True)
class QueuedForRetry:
    entity_id: uuid.UUID | None
    job_id: uuid.UUID
    reason: str


@dataclass(frozen=True)
class Rejected:
    entity_id: uuid.UUID | None
    reason: str


SyncOutcome = Union[Committed, QueuedForRetry, Rejected]


class SyncServiceError(Exception):
    pass


class EntityNotFoundError(SyncServiceError):
    pass


class DependencyPending(SyncServiceError):
    """A referenced row has no legacy id yet; retry once it does."""

    retryable = True


class RetryableSyncError(SyncServiceError):
    def __init__(self, message: str, *, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = ambiguous


class PermanentSyncError(SyncServiceError):
    pass


class LinkPending(RetryableSyncError):
    """The entity is synced but a deferred case link still has to be sent."""


@dataclass
class EntityChange:
    """A local mutation: column names to new values."""

    entity_type: str
    operation: str
    values: dict[str, Any] = field(default_factory=dict)
    entity_id: uuid.UUID | None = None


def sync_backoff_seconds(attempt: int) -> float:
    """Base 1s, factor 2, capped (defaults 1s..60s)."""
    return job_service.compute_backoff_seconds(
        attempt, base=settings.SYNC_BACKOFF_BASE_SECONDS, cap=settings.SYNC_BACKOFF_CAP_SECONDS
    )


# =============================================================================
# Push
# =============================================================================


@dataclass
class _PushResult:
    external_id: int | None
    sent: dict[str, Any]


def _writable_fields(entity_type: str, names) -> list[str]:
    allowed = shadow_store.LEGACY_WRITABLE_COLUMNS[entity_type]
    return [name for name in names if name in allowed]


def _sent_columns(entity_type: str, row, fields: list[str]) -> dict[str, Any]:
    return {name: getattr(row, name) for name in fields}


def _build_request(db: Session, entity_type: str, row, fields: list[str], operation: str) -> LegacyRequest:
    if operation == CREATE:
        fields = [f for f in shadow_store.LEGACY_WRITABLE_COLUMNS[entity_type] if getattr(row, f) is not None]
    values = shadow_store.legacy_values(db, entity_type, row, fields)
    if "constituent_external_id" in values and values["constituent_external_id"] is None:
        if entity_type == EntityType.CONTACT_DETAIL.value or getattr(row, "constituent_id", None):
            raise DependencyPending(f"{entity_type} {row.id} references an unsynced constituent")
    return to_legacy_payload(entity_type, values, operation, external_id=row.external_id)


async def _push(
    db: Session,
    client: LegacyApiClient,
    entity_type: str,
    row,
    fields: list[str],
    operation: str,
    idempotency_key: str,
) -> _PushResult:
    if operation == CREATE:
        fields = list(shadow_store.LEGACY_WRITABLE_COLUMNS[entity_type])
    request = _build_request(db, entity_type, row, fields, operation)
    sent = _sent_columns(entity_type, row, fields)
    response = await client.send(request, idempotency_key=idempotency_key)
    external_id = adapt_created_id(entity_type, response) if operation == CREATE else None
    return _PushResult(external_id=external_id, sent=sent)


def _apply_success(db: Session, entity_type: str, row, result: _PushResult, now: datetime) -> None:
    db.refresh(row)
    # Clear only fields nobody has changed since they were sent
    cleared = [name for name, value in result.sent.items() if getattr(row, name) == value]
    shadow_store.record_synced(row, result.external_id, fields=cleared, now=now)
    db.commit()


# =============================================================================
# Read-reconciliation after an ambiguous write
# =============================================================================


async def _find_landed(
    db: Session,
    client: LegacyApiClient,
    entity_type: str,
    row,
    fields: list[str],
    operation: str,
) -> tuple[bool, int | None]:
    """Check whether an ambiguous write reached legacy.

    Returns ``(landed, external_id)``.
    """
    if operation == UPDATE:
        if row.external_id is None:
            return False, None
        record = await client.get_or_none(entity_path(entity_type, row.external_id))
        if not isinstance(record, dict):
            return False, None
        values = shadow_store.legacy_values(db, entity_type, row, fields)
        return matches_legacy(entity_type, values, record), row.external_id

    values = shadow_store.legacy_values(
        db,
        entity_type,
        row,
        [f for f in shadow_store.LEGACY_WRITABLE_COLUMNS[entity_type] if getattr(row, f) is not None],
    )
    candidates: list[dict] = []
    if entity_type == EntityType.CASE.value and values.get("constituent_external_id"):
        response = await client.send(filters.cases_for_constituent(values["constituent_external_id"]))
        candidates = list(adapt_search_page(response, page=1, limit=50).records)
    elif entity_type == EntityType.CONSTITUENT.value:
        email = _primary_email(db, row)
        if email:
            response = await client.send(filters.constituent_by_email(email))
            candidates = list(adapt_search_page(response, page=1, limit=5).records)
        else:
            # A fresh constituent has no contact details yet; search results
            # carry names, so match on those alone
            response = await client.send(filters.constituents_by_name(row.first_name, row.last_name))
            candidates = list(adapt_search_page(response, page=1, limit=10).records)
            values = {name: values[name] for name in ("first_name", "last_name") if name in values}
    elif entity_type == EntityType.CONTACT_DETAIL.value and values.get("constituent_external_id"):
        record = await client.get_constituent(values["constituent_external_id"])
        for item in (record or {}).get("contactDetails") or []:
            detail = adapt_contact_detail(item, values["constituent_external_id"])
            if shadow_store.normalize_contact_value(row.contact_type, detail.value) == row.normalized_value:
                return True, detail.external_id
        return False, None

    known = _already_mapped(db, row, [r.get("id") for r in candidates if isinstance(r, dict)])
    for record in candidates:
        if not isinstance(record, dict) or record.get("id") in known:
            continue
        if matches_legacy(entity_type, values, record):
            return True, adapt_created_id(entity_type, record)
    return False, None


def _primary_email(db: Session, row) -> str | None:
    if not isinstance(row, Constituent):
        return None
    for detail in row.contact_details:
        if detail.contact_type == "email":
            return detail.value
    return None


def _already_mapped(db: Session, row, external_ids: list) -> set[int]:
    ids = [int(value) for value in external_ids if value is not None]
    if not ids:
        return set()
    model = type(row)
    mapped = db.query(model.external_id).filter(
        model.office_id == row.office_id, model.external_id.in_(ids)
    )
    return {value for (value,) in mapped}


# =============================================================================
# Local (optimistic) writes
# =============================================================================


@dataclass
class _Snapshot:
    values: dict[str, Any]
    pending_fields: list
    pending_sync: bool
    local_modified_at: datetime | None
    sync_error: str | None
    version: int | None = None


def _apply_local(db: Session, office_id: uuid.UUID, change: EntityChange, now: datetime):
    model = shadow_store.model_for(change.entity_type)
    if change.operation == CREATE:
        values = dict(change.values)
        if change.entity_type == EntityType.CONTACT_DETAIL.value:
            values.setdefault(
                "normalized_value",
                shadow_store.normalize_contact_value(values.get("contact_type", ""), values.get("value", "")),
            )
        row = model(office_id=office_id, external_id=None, pending_fields=[], **values)
        db.add(row)
        shadow_store.mark_pending_sync(
            row, _writable_fields(change.entity_type, values.keys()), now=now
        )
        db.commit()
        db.refresh(row)
        return row, None, _writable_fields(change.entity_type, values.keys())

    if change.entity_id is None:
        raise EntityNotFoundError("Update needs an entity id")
    row = shadow_store.get_by_internal_id(db, office_id, change.entity_type, change.entity_id)
    if row is None:
        raise EntityNotFoundError(f"{change.entity_type} {change.entity_id} not found")

    snapshot = _Snapshot(
        values={name: getattr(row, name) for name in change.values},
        pending_fields=list(row.pending_fields or []),
        pending_sync=row.pending_sync,
        local_modified_at=row.local_modified_at,
        sync_error=row.sync_error,
    )
    for name, value in change.values.items():
        setattr(row, name, value)
    fields = _writable_fields(change.entity_type, change.values.keys())
    if fields:
        shadow_store.mark_pending_sync(row, fields, now=now)
    db.commit()
    db.refresh(row)
    snapshot.version = row.version
    return row, snapshot, fields


def _undo_local(db: Session, change: EntityChange, row, snapshot: _Snapshot | None) -> None:
    db.refresh(row)
    if snapshot is None:
        db.delete(row)
        db.commit()
        return
    if row.version != snapshot.version:
        # A newer edit owns the fields it touched; undo only the untouched ones
        untouched = [
            name for name, value in change.values.items() if getattr(row, name) == value
        ]
        for name in untouched:
            setattr(row, name, snapshot.values[name])
        pending = [
            name for name in row.pending_fields or []
            if name not in untouched or name in snapshot.pending_fields
        ]
        row.pending_fields = pending
        row.pending_sync = bool(pending)
        logger.warning(
            "Partial rollback of %s %s: it changed again while the write was in flight",
            change.entity_type,
            row.id,
        )
    else:
        for name, value in snapshot.values.items():
            setattr(row, name, value)
        row.pending_fields = snapshot.pending_fields
        row.pending_sync = snapshot.pending_sync
        row.local_modified_at = snapshot.local_modified_at
        row.sync_error = snapshot.sync_error
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.warning("Rollback of %s %s lost a version race", change.entity_type, row.id)


def _queue_push(
    db: Session,
    office_id: uuid.UUID,
    entity_type: str,
    row,
    fields: list[str],
    operation: str,
    idempotency_key: str,
    reason: str,
    *,
    ambiguous: bool = False,
    now: datetime | None = None,
) -> Job:
    now = now or utc_now()
    job = job_service.schedule_job(
        db,
        JobKind.SYNC_PUSH.value,
        {
            "entity_type": entity_type,
            "entity_id": str(row.id),
            "operation": operation,
            "fields": list(fields),
            "idempotency_key": idempotency_key,
            "ambiguous": ambiguous,
            "reason": reason,
        },
        office_id=office_id,
        run_at=now + timedelta(seconds=sync_backoff_seconds(1)),
        idempotency_key=f"sync_push:{idempotency_key}",
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
    )
    return job


# =============================================================================
# Public API
# =============================================================================


async def commit(
    db: Session,
    office_id: uuid.UUID,
    change: EntityChange,
    *,
    client: LegacyApiClient,
    idempotency_key: str | None = None,
) -> SyncOutcome:
    """Apply a local mutation and write it through to legacy."""
    if change.entity_type not in WRITABLE_ENTITY_TYPES:
        raise SyncServiceError(f"Entity type {change.entity_type} cannot be written")
    if change.operation not in (CREATE, UPDATE):
        raise SyncServiceError(f"Unsupported operation {change.operation}")

    now = utc_now()
    row, snapshot, fields = _apply_local(db, office_id, change, now)
    log_context = build_log_context(office_id=office_id, entity_type=change.entity_type)

    if change.operation == UPDATE and not fields:
        # Shadow-only enrichment; nothing for legacy to acknowledge
        return Committed(entity_id=row.id, external_id=row.external_id)
    if change.operation == UPDATE and row.external_id is None:
        # Still waiting on its create; the queued create will carry these fields
        job = _queue_push(
            db, office_id, change.entity_type, row, fields, CREATE,
            idempotency_key or f"sync:{change.entity_type}:{row.id}:create",
            "Entity not yet created in legacy",
        )
        return QueuedForRetry(entity_id=row.id, job_id=job.id, reason="Entity not yet created in legacy")

    if change.operation == CREATE:
        key = idempotency_key or f"sync:{change.entity_type}:{row.id}:create"
    else:
        key = idempotency_key or f"sync:{change.entity_type}:{row.id}:v{row.version}"

    try:
        result = await _push(db, client, change.entity_type, row, fields, change.operation, key)
    except Ambiguous as exc:
        try:
            landed, external_id = await _find_landed(
                db, client, change.entity_type, row, fields, change.operation
            )
        except (LegacyApiError, AdaptationError) as lookup_exc:
            logger.warning("Read-reconciliation failed: %s", lookup_exc, extra=log_context)
            landed, external_id = False, None
        if landed:
            logger.info("Ambiguous write had landed; not resending", extra=log_context)
            sent = _sent_columns(change.entity_type, row, fields)
            _apply_success(db, change.entity_type, row, _PushResult(external_id, sent), utc_now())
            return Committed(entity_id=row.id, external_id=row.external_id)
        job = _queue_push(
            db, office_id, change.entity_type, row, fields, change.operation, key, str(exc),
            ambiguous=True,
        )
        return QueuedForRetry(entity_id=row.id, job_id=job.id, reason=str(exc))
    except (Forbidden, ValidationRejected, NotFound, AdaptationError) as exc:
        reason = exc.reason if isinstance(exc, ValidationRejected) else str(exc)
        logger.info("Legacy rejected %s %s: %s", change.operation, change.entity_type, reason, extra=log_context)
        entity_id = row.id if snapshot is not None else None
        _undo_local(db, change, row, snapshot)
        return Rejected(entity_id=entity_id, reason=reason)
    except (LegacyApiError, DependencyPending) as exc:
        if isinstance(exc, AuthExpired):
            logger.error("Legacy credentials need attention; write queued", extra=log_context)
        elif isinstance(exc, LegacyApiError) and not exc.retryable:
            # Disabled client, auth rejected at login: also wait for an operator
            logger.error("Legacy API unavailable: %s", exc, extra=log_context)
        job = _queue_push(db, office_id, change.entity_type, row, fields, change.operation, key, str(exc))
        return QueuedForRetry(entity_id=row.id, job_id=job.id, reason=str(exc))

    _apply_success(db, change.entity_type, row, result, utc_now())
    return Committed(entity_id=row.id, external_id=row.external_id)


async def push_queued(db: Session, job: Job, *, client: LegacyApiClient) -> dict[str, Any]:
    """Run one queued ``sync_push`` attempt.

    Raises ``RetryableSyncError`` for failures worth another attempt and
    ``PermanentSyncError`` for ones that are not.
    """
    payload = job.payload or {}
    entity_type = payload["entity_type"]
    office_id = job.office_id
    row = shadow_store.get_by_internal_id(
        db, office_id, entity_type, uuid.UUID(payload["entity_id"]), include_deleted=True
    )
    if row is None or row.deleted_at is not None:
        return {"status": "skipped", "reason": "entity gone"}

    operation = payload.get("operation", UPDATE)
    if operation == CREATE and row.external_id is not None:
        operation = UPDATE
    fields = [name for name in row.pending_fields or [] if name in shadow_store.LEGACY_WRITABLE_COLUMNS[entity_type]]
    if operation == UPDATE and not fields:
        shadow_store.record_synced(row, None, fields=[])
        db.commit()
        linked = await _run_deferred_links(db, job, entity_type, row, client)
        return {"status": "nothing_to_push", **linked}

    key = payload.get("idempotency_key") or f"sync:{entity_type}:{row.id}:v{row.version}"

    if payload.get("ambiguous"):
        try:
            landed, external_id = await _find_landed(db, client, entity_type, row, fields, operation)
        except (LegacyApiError, AdaptationError) as exc:
            raise RetryableSyncError(f"Read-reconciliation failed: {exc}", ambiguous=True) from exc
        if landed:
            sent = _sent_columns(entity_type, row, fields)
            _apply_success(db, entity_type, row, _PushResult(external_id, sent), utc_now())
            linked = await _run_deferred_links(db, job, entity_type, row, client)
            return {"status": "committed", "external_id": row.external_id, "reconciled": True, **linked}

    try:
        result = await _push(db, client, entity_type, row, fields, operation, key)
    except Ambiguous as exc:
        raise RetryableSyncError(str(exc), ambiguous=True) from exc
    except (Forbidden, ValidationRejected, NotFound, AdaptationError) as exc:
        reason = exc.reason if isinstance(exc, ValidationRejected) else str(exc)
        mark_sync_failed(db, job, reason)
        raise PermanentSyncError(reason) from exc
    except DependencyPending as exc:
        raise RetryableSyncError(str(exc)) from exc
    except LegacyApiError as exc:
        if isinstance(exc, AuthExpired):
            logger.error(
                "Legacy credentials need attention",
                extra=build_log_context(office_id=office_id, job_id=job.id, entity_type=entity_type),
            )
        raise RetryableSyncError(str(exc)) from exc

    _apply_success(db, entity_type, row, result, utc_now())
    linked = await _run_deferred_links(db, job, entity_type, row, client)
    return {"status": "committed", "external_id": row.external_id, **linked}


def mark_sync_failed(db: Session, job: Job, error: str) -> None:
    """Surface a write that will not be retried on its entity row."""
    payload = job.payload or {}
    entity_type = payload.get("entity_type")
    entity_id = payload.get("entity_id")
    if not entity_type or not entity_id:
        return
    row = shadow_store.get_by_internal_id(
        db, job.office_id, entity_type, uuid.UUID(entity_id), include_deleted=True
    )
    if row is None:
        return
    row.pending_sync = True
    row.sync_error = f"{payload.get('operation', UPDATE)} failed: {error}"[:2000]
    db.commit()


# =============================================================================
# Convenience wrappers
# =============================================================================


async def create_constituent(
    db: Session,
    office_id: uuid.UUID,
    *,
    client: LegacyApiClient,
    first_name: str | None,
    last_name: str,
    title: str | None = None,
    organisation_type: str | None = None,
) -> SyncOutcome:
    return await commit(
        db,
        office_id,
        EntityChange(
            EntityType.CONSTITUENT.value,
            CREATE,
            {
                "first_name": first_name,
                "last_name": last_name,
                "title": title,
                "organisation_type": organisation_type,
            },
        ),
        client=client,
    )


async def add_contact_detail(
    db: Session,
    office_id: uuid.UUID,
    constituent_id: uuid.UUID,
    *,
    client: LegacyApiClient,
    contact_type: str,
    value: str,
    contact_type_id: int | None = None,
) -> SyncOutcome:
    if db.get(Constituent, constituent_id) is None:
        raise EntityNotFoundError(f"Constituent {constituent_id} not found")
    normalized = shadow_store.normalize_contact_value(contact_type, value)
    existing = (
        db.query(ContactDetail)
        .filter(
            ContactDetail.office_id == office_id,
            ContactDetail.contact_type == contact_type,
            ContactDetail.normalized_value == normalized,
        )
        .first()
    )
    if existing is not None:
        return Rejected(entity_id=existing.id, reason="Contact detail already belongs to a constituent")
    if contact_type_id is None:
        contact_type_id = reference_data_service.resolve_by_name(
            db, office_id, ReferenceType.CONTACT_TYPE.value, contact_type
        )
    return await commit(
        db,
        office_id,
        EntityChange(
            EntityType.CONTACT_DETAIL.value,
            CREATE,
            {
                "constituent_id": constituent_id,
                "contact_type": contact_type,
                "contact_type_id": contact_type_id,
                "value": value.strip(),
                "normalized_value": normalized,
            },
        ),
        client=client,
    )


async def mark_message_actioned(
    db: Session, office_id: uuid.UUID, message_id: uuid.UUID, *, client: LegacyApiClient
) -> SyncOutcome:
    return await commit(
        db,
        office_id,
        EntityChange(EntityType.MESSAGE.value, UPDATE, {"actioned": True}, entity_id=message_id),
        client=client,
    )


async def assign_message(
    db: Session,
    office_id: uuid.UUID,
    message_id: uuid.UUID,
    caseworker_id: int,
    *,
    client: LegacyApiClient,
) -> SyncOutcome:
    return await commit(
        db,
        office_id,
        EntityChange(
            EntityType.MESSAGE.value, UPDATE, {"assigned_to_id": caseworker_id}, entity_id=message_id
        ),
        client=client,
    )


async def send_command(
    client: LegacyApiClient,
    request: LegacyRequest,
    *,
    idempotency_key: str,
) -> Any:
    """Fire a legacy write that has no shadow row (case notes, drafts).

    Failures propagate as ``LegacyApiError`` for the caller to handle.
    """
    return await client.send(request, idempotency_key=idempotency_key)


def _pending_create_job(db: Session, case) -> Job | None:
    key = f"sync_push:sync:{EntityType.CASE.value}:{case.id}:create"
    job = db.execute(select(Job).where(Job.idempotency_key == key)).scalars().first()
    if job is None or job.state not in (JobState.CREATED.value, JobState.RETRY.value, JobState.ACTIVE.value):
        return None
    return job


async def link_message_to_case(db: Session, message: Message, case, *, client: LegacyApiClient) -> str:
    """
    Attach an email to a case in legacy (an email-type case note).

    Returns ``"linked"``, or ``"deferred"`` when the case is still waiting on
    its queued create: the link is then carried by that push job and sent
    once the case has a legacy id. Raises ``DependencyPending`` when neither
    is possible and ``LegacyApiError`` when legacy refuses the note.
    """
    message.case_id = case.id
    if message.external_id is None:
        db.commit()
        raise DependencyPending(f"message {message.id} is not in legacy")
    if case.external_id is None:
        job = _pending_create_job(db, case)
        if job is None:
            db.commit()
            raise DependencyPending(f"case {case.id} is not in legacy and has no queued create")
        payload = dict(job.payload or {})
        links = list(payload.get("link_message_ids") or [])
        if str(message.id) not in links:
            links.append(str(message.id))
        job.payload = {**payload, "link_message_ids": links}
        db.commit()
        return "deferred"

    db.commit()
    await send_command(
        client,
        case_note_payload(case.external_id, email_external_id=message.external_id),
        idempotency_key=f"link:{message.id}:{case.id}",
    )
    return "linked"


async def _run_deferred_links(db: Session, job: Job, entity_type: str, row, client: LegacyApiClient) -> dict:
    if entity_type != EntityType.CASE.value or row.external_id is None:
        return {}
    db.refresh(job)
    pending = list((job.payload or {}).get("link_message_ids") or [])
    if not pending:
        return {}

    log_context = build_log_context(office_id=job.office_id, job_id=job.id, entity_type=entity_type)
    done: list[str] = []
    for message_id in pending:
        message = db.get(Message, uuid.UUID(message_id))
        if message is not None and message.external_id is not None:
            try:
                await send_command(
                    client,
                    case_note_payload(row.external_id, email_external_id=message.external_id),
                    idempotency_key=f"link:{message.id}:{row.id}",
                )
            except (Forbidden, ValidationRejected, NotFound) as exc:
                logger.warning("Legacy refused to link message %s: %s", message_id, exc, extra=log_context)
            except LegacyApiError as exc:
                job.payload = {**job.payload, "link_message_ids": [m for m in pending if m not in done]}
                db.commit()
                raise LinkPending(f"Linking message {message_id} failed: {exc}") from exc
        done.append(message_id)

    job.payload = {**job.payload, "link_message_ids": []}
    db.commit()
    return {"linked_messages": done}


def _synced_case(db: Session, office_id: uuid.UUID, case_id: uuid.UUID):
    case = shadow_store.get_by_internal_id(db, office_id, EntityType.CASE.value, case_id)
    if case is None:
        raise EntityNotFoundError(f"Case {case_id} not found")
    if case.external_id is None:
        raise DependencyPending(f"case {case.id} is not yet in legacy")
    return case


async def add_case_note(
    db: Session,
    office_id: uuid.UUID,
    case_id: uuid.UUID,
    content: str,
    *,
    client: LegacyApiClient,
    idempotency_key: str | None = None,
) -> SyncOutcome:
    """Append a note to a synced case. Notes are not mirrored locally."""
    case = _synced_case(db, office_id, case_id)
    key = idempotency_key or f"case_note:{case.id}:{uuid.uuid4()}"
    try:
        response = await send_command(
            client, case_note_payload(case.external_id, content=content), idempotency_key=key
        )
    except (Forbidden, ValidationRejected, NotFound) as exc:
        return Rejected(entity_id=case.id, reason=exc.reason if isinstance(exc, ValidationRejected) else str(exc))
    note_id = response.get("id") if isinstance(response, dict) else None
    return Committed(entity_id=case.id, external_id=note_id)


async def create_draft(
    db: Session,
    office_id: uuid.UUID,
    *,
    to: list[str],
    subject: str,
    html_body: str,
    client: LegacyApiClient,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    case_id: uuid.UUID | None = None,
    send: bool = False,
    idempotency_key: str | None = None,
) -> SyncOutcome:
    """
    Create an outbound email in legacy and mirror it as a message.

    With ``send`` the draft is also sent through legacy. A send failure after
    the draft exists propagates; the mirrored draft is kept.
    """
    case = _synced_case(db, office_id, case_id) if case_id else None
    key = idempotency_key or f"draft:{uuid.uuid4()}"
    try:
        request = draft_email_payload(
            to=to,
            subject=subject,
            html_body=html_body,
            cc=cc,
            bcc=bcc,
            case_external_id=case.external_id if case else None,
        )
        response = await send_command(client, request, idempotency_key=key)
        external_id = adapt_created_id(EntityType.MESSAGE.value, response)
    except AdaptationError as exc:
        return Rejected(entity_id=None, reason=str(exc))
    except (Forbidden, ValidationRejected, NotFound) as exc:
        return Rejected(entity_id=None, reason=exc.reason if isinstance(exc, ValidationRejected) else str(exc))

    now = utc_now()
    message = Message(
        office_id=office_id,
        external_id=external_id,
        direction=MessageDirection.OUTBOUND.value,
        case_id=case.id if case else None,
        constituent_id=case.constituent_id if case else None,
        subject=subject,
        html_body=html_body,
        to_addresses=list(to),
        cc_addresses=list(cc or []),
        bcc_addresses=list(bcc or []),
        triage_status=TriageStatus.DECIDED.value,
        last_synced_at=now,
        pending_fields=[],
    )
    db.add(message)
    db.commit()

    if send:
        await client.send_draft(external_id, idempotency_key=f"{key}:send")
        message.sent_at = utc_now()
        db.commit()
    return Committed(entity_id=message.id, external_id=external_id)


def describe_outcome(outcome: SyncOutcome) -> dict[str, Any]:
    """Plain-dict form of a commit outcome for API responses and job output."""
    if isinstance(outcome, Committed):
        return {
            "status": "committed",
            "entity_id": str(outcome.entity_id),
            "external_id": outcome.external_id,
        }
    if isinstance(outcome, QueuedForRetry):
        return {
            "status": "queued",
            "entity_id": str(outcome.entity_id),
            "job_id": str(outcome.job_id),
            "reason": outcome.reason,
        }
    return {
        "status": "rejected",
        "entity_id": str(outcome.entity_id) if outcome.entity_id else None,
        "reason": outcome.reason,
    }
