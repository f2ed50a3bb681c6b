"""Shadow store: the local mirror of legacy entities.

Functions here flush but never commit; the caller owns the transaction so a
whole reconciliation page (or a whole dual write) commits or rolls back as
one unit.

Field ownership when legacy and local edits meet:
- legacy-owned columns take the legacy value, unless the column has a local
  edit still waiting to be pushed (listed in ``pending_fields``);
- shadow-only columns (classification, priority, tags, notes, ...) are never
  touched by ingestion.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from casebridge.acl import (
    CanonicalCase,
    CanonicalConstituent,
    CanonicalContactDetail,
    CanonicalMessage,
    adapt,
)
from casebridge.core.structured_logging import build_log_context
from casebridge.db.enums import ConflictResolution, EntityType
from casebridge.db.models import (
    Case,
    Constituent,
    ContactDetail,
    Message,
    SyncConflictLog,
)
from casebridge.db.types import utc_now

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    EntityType.CONSTITUENT.value: Constituent,
    EntityType.CONTACT_DETAIL.value: ContactDetail,
    EntityType.CASE.value: Case,
    EntityType.MESSAGE.value: Message,
}

# Columns whose value comes from the legacy system and can be written back
LEGACY_WRITABLE_COLUMNS = {
    EntityType.CONSTITUENT.value: ("first_name", "last_name", "title", "organisation_type"),
    EntityType.CONTACT_DETAIL.value: ("contact_type_id", "value"),
    EntityType.CASE.value: (
        "constituent_id",
        "case_type_id",
        "status_id",
        "category_type_id",
        "contact_type_id",
        "assigned_to_id",
        "summary",
        "review_date",
    ),
    EntityType.MESSAGE.value: ("actioned", "assigned_to_id", "scheduled_at"),
}


class ShadowStoreError(Exception):
    pass


class UnknownEntityType(ShadowStoreError):
    pass


class ExternalIdMismatch(ShadowStoreError):
    """A row already mapped to one legacy id was asked to take another."""


@dataclass
class ConflictDetected:
    """A legacy change met unpushed local edits on the same row."""

    entity_type: str
    internal_id: uuid.UUID
    external_id: int | None
    fields: list[str]
    resolution: ConflictResolution
    legacy_values: dict[str, Any] = field(default_factory=dict)
    local_values: dict[str, Any] = field(default_factory=dict)


@dataclass
class UpsertResult:
    entity: Any
    created: bool = False
    changed: bool = False
    stale: bool = False
    conflict: ConflictDetected | None = None


def model_for(entity_type: str):
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError:
        raise UnknownEntityType(f"Unknown entity type: {entity_type}")


def normalize_contact_value(contact_type: str, value: str) -> str:
    value = (value or "").strip()
    if contact_type == "email":
        return value.lower()
    if contact_type in ("phone", "mobile", "telephone"):
        digits = re.sub(r"\D", "", value)
        return digits or value.lower()
    return re.sub(r"\s+", " ", value).lower()


def _max_ts(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


# =============================================================================
# Lookups
# =============================================================================


def get_by_external_id(
    db: Session,
    office_id: uuid.UUID,
    entity_type: str,
    external_id: int,
    *,
    include_deleted: bool = False,
):
    model = model_for(entity_type)
    stmt = select(model).where(model.office_id == office_id, model.external_id == external_id)
    if not include_deleted:
        stmt = stmt.where(model.deleted_at.is_(None))
    return db.execute(stmt).scalars().first()


def get_by_internal_id(
    db: Session,
    office_id: uuid.UUID,
    entity_type: str,
    internal_id: uuid.UUID,
    *,
    include_deleted: bool = False,
):
    model = model_for(entity_type)
    row = db.get(model, internal_id)
    if row is None or row.office_id != office_id:
        return None
    if row.deleted_at is not None and not include_deleted:
        return None
    return row


def _internal_id_for(
    db: Session, office_id: uuid.UUID, entity_type: str, external_id: int | None
) -> uuid.UUID | None:
    if external_id is None:
        return None
    row = get_by_external_id(db, office_id, entity_type, external_id, include_deleted=True)
    return row.id if row else None


def legacy_values(db: Session, entity_type: str, row, fields: Iterable[str]) -> dict[str, Any]:
    """Current shadow values for ``fields`` in canonical (payload) naming.

    Internal references are swapped for the legacy id of the referenced row;
    ``DependencyPending`` callers check for a ``None`` there.
    """
    values: dict[str, Any] = {}
    for name in fields:
        if name == "constituent_id":
            constituent = db.get(Constituent, row.constituent_id) if row.constituent_id else None
            values["constituent_external_id"] = constituent.external_id if constituent else None
        else:
            values[name] = getattr(row, name)
    if entity_type == EntityType.CONTACT_DETAIL.value:
        constituent = db.get(Constituent, row.constituent_id)
        values["constituent_external_id"] = constituent.external_id if constituent else None
    return values


# =============================================================================
# Canonical -> columns
# =============================================================================


def _constituent_columns(db: Session, office_id: uuid.UUID, entity: CanonicalConstituent) -> dict[str, Any]:
    return {
        "first_name": entity.first_name,
        "last_name": entity.last_name,
        "title": entity.title,
        "organisation_type": entity.organisation_type,
        "geocode_lat": entity.geocode_lat,
        "geocode_lng": entity.geocode_lng,
    }


def _case_columns(db: Session, office_id: uuid.UUID, entity: CanonicalCase) -> dict[str, Any]:
    return {
        "constituent_id": _internal_id_for(
            db, office_id, EntityType.CONSTITUENT.value, entity.constituent_external_id
        ),
        "case_type_id": entity.case_type_id,
        "status_id": entity.status_id,
        "category_type_id": entity.category_type_id,
        "contact_type_id": entity.contact_type_id,
        "assigned_to_id": entity.assigned_to_id,
        "summary": entity.summary,
        "review_date": entity.review_date,
        "legacy_created_at": entity.created_at,
    }


def _message_columns(db: Session, office_id: uuid.UUID, entity: CanonicalMessage) -> dict[str, Any]:
    return {
        "case_id": _internal_id_for(db, office_id, EntityType.CASE.value, entity.case_external_id),
        "constituent_id": _internal_id_for(
            db, office_id, EntityType.CONSTITUENT.value, entity.constituent_external_id
        ),
        "direction": entity.direction,
        "subject": entity.subject,
        "html_body": entity.html_body,
        "from_address": entity.from_address,
        "to_addresses": list(entity.to_addresses),
        "cc_addresses": list(entity.cc_addresses),
        "bcc_addresses": list(entity.bcc_addresses),
        "actioned": entity.actioned,
        "assigned_to_id": entity.assigned_to_id,
        "scheduled_at": entity.scheduled_at,
        "sent_at": entity.sent_at,
        "received_at": entity.received_at,
    }


_COLUMN_BUILDERS = {
    EntityType.CONSTITUENT.value: _constituent_columns,
    EntityType.CASE.value: _case_columns,
    EntityType.MESSAGE.value: _message_columns,
}


# =============================================================================
# Upsert
# =============================================================================


def upsert_from_legacy(
    db: Session,
    office_id: uuid.UUID,
    entity_type: str,
    legacy_record: dict,
    *,
    now: datetime | None = None,
) -> UpsertResult:
    """Adapt one legacy record and merge it into the shadow store.

    Idempotent on ``external_id``: applying the same record twice leaves the
    same state. A record older than the version the row has already seen is
    ignored.
    """
    now = now or utc_now()
    canonical = adapt(entity_type, legacy_record)
    builder = _COLUMN_BUILDERS.get(entity_type)
    if builder is None:
        raise UnknownEntityType(f"Entity type {entity_type} is not ingested directly")
    values = builder(db, office_id, canonical)
    model = model_for(entity_type)

    row = get_by_external_id(db, office_id, entity_type, canonical.external_id, include_deleted=True)
    if row is None:
        row = model(
            office_id=office_id,
            external_id=canonical.external_id,
            legacy_updated_at=canonical.updated_at,
            last_synced_at=now,
            pending_fields=[],
            **values,
        )
        db.add(row)
        db.flush()
        if isinstance(canonical, CanonicalConstituent):
            _sync_contact_details(db, office_id, row, canonical.contact_details, now)
        return UpsertResult(entity=row, created=True, changed=True)

    if (
        canonical.updated_at is not None
        and row.legacy_updated_at is not None
        and canonical.updated_at < row.legacy_updated_at
    ):
        logger.debug(
            "Skipping stale %s %s (%s < %s)",
            entity_type,
            canonical.external_id,
            canonical.updated_at,
            row.legacy_updated_at,
        )
        return UpsertResult(entity=row, stale=True)

    pending = set(row.pending_fields or [])
    differing = [name for name, value in values.items() if getattr(row, name) != value]
    kept = [name for name in differing if name in pending]
    applied = [name for name in differing if name not in pending]

    conflict = None
    locally_modified = row.local_modified_at is not None and (
        row.legacy_updated_at is None or row.local_modified_at > row.legacy_updated_at
    )
    if locally_modified and differing:
        if not applied:
            resolution = ConflictResolution.LOCAL_WINS
        elif kept:
            resolution = ConflictResolution.MERGED
        else:
            resolution = ConflictResolution.LEGACY_WINS
        conflict = ConflictDetected(
            entity_type=entity_type,
            internal_id=row.id,
            external_id=row.external_id,
            fields=sorted(differing),
            resolution=resolution,
            legacy_values={name: _jsonable(values[name]) for name in differing},
            local_values={name: _jsonable(getattr(row, name)) for name in differing},
        )
        _log_conflict(db, office_id, conflict)

    for name in applied:
        setattr(row, name, values[name])

    # Local edits legacy now agrees with no longer need pushing
    still_pending = [name for name in row.pending_fields or [] if getattr(row, name) != values.get(name, object())]
    if still_pending != list(row.pending_fields or []):
        row.pending_fields = still_pending
    if not still_pending and row.pending_sync:
        row.pending_sync = False
        row.sync_error = None
        row.local_modified_at = None

    row.legacy_updated_at = _max_ts(row.legacy_updated_at, canonical.updated_at)
    row.last_synced_at = _max_ts(row.last_synced_at, now)
    if row.deleted_at is not None:
        # Legacy still has it, so the mapping comes back to life
        row.deleted_at = None
    db.flush()

    if isinstance(canonical, CanonicalConstituent):
        _sync_contact_details(db, office_id, row, canonical.contact_details, now)

    return UpsertResult(entity=row, changed=bool(applied), conflict=conflict)


def _sync_contact_details(
    db: Session,
    office_id: uuid.UUID,
    constituent: Constituent,
    details: Iterable[CanonicalContactDetail],
    now: datetime,
) -> None:
    details = list(details)
    seen: set[uuid.UUID] = set()
    for detail in details:
        normalized = normalize_contact_value(detail.contact_type, detail.value)
        existing = None
        if detail.external_id is not None:
            existing = get_by_external_id(
                db, office_id, EntityType.CONTACT_DETAIL.value, detail.external_id, include_deleted=True
            )
        if existing is None:
            existing = db.execute(
                select(ContactDetail).where(
                    ContactDetail.office_id == office_id,
                    ContactDetail.contact_type == detail.contact_type,
                    ContactDetail.normalized_value == normalized,
                )
            ).scalars().first()

        if existing is None:
            existing = ContactDetail(
                office_id=office_id,
                constituent_id=constituent.id,
                external_id=detail.external_id,
                contact_type=detail.contact_type,
                contact_type_id=detail.contact_type_id,
                value=detail.value,
                normalized_value=normalized,
                last_synced_at=now,
                pending_fields=[],
            )
            db.add(existing)
            db.flush()
            seen.add(existing.id)
            continue

        if existing.constituent_id != constituent.id:
            logger.warning(
                "Contact detail moved between constituents",
                extra=build_log_context(office_id=office_id, entity_type=EntityType.CONTACT_DETAIL.value),
            )
            existing.constituent_id = constituent.id
        if detail.external_id is not None and existing.external_id is None:
            existing.external_id = detail.external_id
        existing.contact_type = detail.contact_type
        existing.value = detail.value
        existing.normalized_value = normalized
        if detail.contact_type_id is not None:
            existing.contact_type_id = detail.contact_type_id
        existing.deleted_at = None
        existing.last_synced_at = _max_ts(existing.last_synced_at, now)
        seen.add(existing.id)

    if details:
        # Synced details legacy no longer lists; unsynced local additions stay
        stale = db.execute(
            select(ContactDetail).where(
                ContactDetail.constituent_id == constituent.id,
                ContactDetail.external_id.is_not(None),
                ContactDetail.pending_sync.is_(False),
                ContactDetail.deleted_at.is_(None),
            )
        ).scalars()
        for row in stale:
            if row.id not in seen:
                soft_delete(row, now=now)
    db.flush()


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _log_conflict(db: Session, office_id: uuid.UUID, conflict: ConflictDetected) -> None:
    logger.info(
        "Sync conflict on %s %s resolved %s (fields: %s)",
        conflict.entity_type,
        conflict.external_id,
        conflict.resolution.value,
        ", ".join(conflict.fields),
        extra=build_log_context(office_id=office_id, entity_type=conflict.entity_type),
    )
    db.add(
        SyncConflictLog(
            office_id=office_id,
            entity_type=conflict.entity_type,
            internal_id=conflict.internal_id,
            external_id=conflict.external_id,
            fields=conflict.fields,
            resolution=conflict.resolution.value,
            legacy_values=conflict.legacy_values,
            local_values=conflict.local_values,
        )
    )


# =============================================================================
# Local writes
# =============================================================================


def mark_pending_sync(row, fields: Iterable[str] = (), *, now: datetime | None = None) -> None:
    """Flag a row as carrying local edits legacy has not acknowledged."""
    pending = list(row.pending_fields or [])
    for name in fields:
        if name not in pending:
            pending.append(name)
    row.pending_fields = pending
    row.pending_sync = True
    row.sync_error = None
    row.local_modified_at = now or utc_now()


def record_synced(
    row,
    external_id: int | None,
    *,
    fields: Iterable[str] | None = None,
    legacy_updated_at: datetime | None = None,
    now: datetime | None = None,
) -> None:
    """Record a successful legacy write.

    ``fields`` limits which pending fields are cleared; ``None`` clears all.
    """
    now = now or utc_now()
    if external_id is not None:
        if row.external_id is not None and row.external_id != external_id:
            raise ExternalIdMismatch(
                f"Row {row.id} is mapped to {row.external_id}, not {external_id}"
            )
        row.external_id = external_id
    if fields is None:
        remaining: list[str] = []
    else:
        done = set(fields)
        remaining = [name for name in row.pending_fields or [] if name not in done]
    row.pending_fields = remaining
    row.pending_sync = bool(remaining) or row.external_id is None
    row.sync_error = None
    if not remaining:
        row.local_modified_at = None
    row.last_synced_at = _max_ts(row.last_synced_at, now)
    row.legacy_updated_at = _max_ts(row.legacy_updated_at, legacy_updated_at)


def soft_delete(row, *, now: datetime | None = None) -> None:
    """Hide a row without losing its legacy mapping."""
    row.deleted_at = now or utc_now()
