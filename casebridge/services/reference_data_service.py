"""Office reference data: case types, statuses, categories, contact types, caseworkers."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from casebridge.acl import AdaptationError, adapt_reference
from casebridge.core.structured_logging import build_log_context
from casebridge.db.enums import ReferenceType
from casebridge.db.models import ReferenceItem
from casebridge.db.types import utc_now
from casebridge.services.legacy_client import LegacyApiClient

logger = logging.getLogger(__name__)


async def sync_reference_data(
    db: Session, office_id: uuid.UUID, *, client: LegacyApiClient
) -> dict[str, int]:
    """Full refresh of every reference list. Items legacy no longer returns are deactivated."""
    counts: dict[str, int] = {}
    now = utc_now()
    for ref_type in ReferenceType:
        records = await client.list_reference(ref_type.value)
        existing = {
            item.external_id: item
            for item in db.execute(
                select(ReferenceItem).where(
                    ReferenceItem.office_id == office_id,
                    ReferenceItem.ref_type == ref_type.value,
                )
            ).scalars()
        }
        seen: set[int] = set()
        for record in records:
            try:
                ref = adapt_reference(ref_type.value, record)
            except AdaptationError as exc:
                logger.warning(
                    "Skipping reference item: %s",
                    exc,
                    extra=build_log_context(office_id=office_id, entity_type=ref_type.value),
                )
                continue
            seen.add(ref.external_id)
            item = existing.get(ref.external_id)
            if item is None:
                item = ReferenceItem(
                    office_id=office_id, ref_type=ref_type.value, external_id=ref.external_id
                )
                db.add(item)
            item.name = ref.name
            item.is_active = ref.is_active
            item.is_closed = ref.is_closed
            item.last_synced_at = now
        for external_id, item in existing.items():
            if external_id not in seen:
                item.is_active = False
        counts[ref_type.value] = len(seen)
    db.commit()
    logger.info(
        "Reference data refreshed: %s",
        counts,
        extra=build_log_context(office_id=office_id),
    )
    return counts


def list_items(
    db: Session, office_id: uuid.UUID, ref_type: str, *, active_only: bool = True
) -> list[ReferenceItem]:
    stmt = select(ReferenceItem).where(
        ReferenceItem.office_id == office_id, ReferenceItem.ref_type == ref_type
    )
    if active_only:
        stmt = stmt.where(ReferenceItem.is_active.is_(True))
    return list(db.execute(stmt.order_by(ReferenceItem.name)).scalars())


def valid_ids(db: Session, office_id: uuid.UUID, ref_type: str) -> set[int]:
    return {item.external_id for item in list_items(db, office_id, ref_type)}


def closed_status_ids(db: Session, office_id: uuid.UUID) -> set[int]:
    return {
        item.external_id
        for item in list_items(db, office_id, ReferenceType.STATUS_TYPE.value, active_only=False)
        if item.is_closed
    }


def resolve_by_name(db: Session, office_id: uuid.UUID, ref_type: str, name: str) -> int | None:
    if not name:
        return None
    item = db.execute(
        select(ReferenceItem).where(
            ReferenceItem.office_id == office_id,
            ReferenceItem.ref_type == ref_type,
            ReferenceItem.is_active.is_(True),
            func.lower(ReferenceItem.name) == name.strip().lower(),
        )
    ).scalars().first()
    return item.external_id if item else None


def snapshot(db: Session, office_id: uuid.UUID) -> dict[str, list[dict[str, Any]]]:
    """Active reference data as plain dicts, for classifier context."""
    result: dict[str, list[dict[str, Any]]] = {}
    for ref_type in ReferenceType:
        result[ref_type.value] = [
            {"id": item.external_id, "name": item.name, "is_closed": item.is_closed}
            for item in list_items(db, office_id, ref_type.value)
        ]
    return result
