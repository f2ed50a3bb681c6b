"""
Leased mutex over the shared mail-automation session.

Exactly one holder at a time. ``acquire`` is one-shot: it either takes the
row with a conditional UPDATE (unlocked, expired, or already ours) or returns
``Denied`` straight away. A holder that stops renewing loses the lease once
``expires_at`` passes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casebridge.core.config import settings
from casebridge.core.structured_logging import build_log_context
from casebridge.db.models import MAIL_AUTOMATION_RESOURCE, AutomationLease
from casebridge.db.types import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    resource: str
    holder_id: str
    office_id: uuid.UUID | None
    expires_at: datetime


@dataclass(frozen=True)
class Granted:
    lease: Lease


@dataclass(frozen=True)
class Denied:
    holder_id: str | None
    expires_at: datetime | None


LeaseResult = Union[Granted, Denied]


def _ensure_row(db: Session, resource: str) -> None:
    if db.get(AutomationLease, resource) is not None:
        return
    db.add(AutomationLease(resource=resource, locked=False))
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently
        db.rollback()


def _current(db: Session, resource: str) -> AutomationLease | None:
    return db.get(AutomationLease, resource, populate_existing=True)


def acquire(
    db: Session,
    office_id: uuid.UUID | None,
    holder_id: str,
    ttl_seconds: int | None = None,
    *,
    resource: str = MAIL_AUTOMATION_RESOURCE,
    now: datetime | None = None,
) -> LeaseResult:
    now = now or utc_now()
    ttl = ttl_seconds or settings.AUTOMATION_LEASE_TTL_SECONDS
    expires_at = now + timedelta(seconds=ttl)
    _ensure_row(db, resource)

    result = db.execute(
        update(AutomationLease)
        .where(
            AutomationLease.resource == resource,
            or_(
                AutomationLease.locked.is_(False),
                AutomationLease.expires_at.is_(None),
                AutomationLease.expires_at <= now,
                and_(
                    AutomationLease.locked_by == holder_id,
                    AutomationLease.locked_by_office_id == office_id,
                ),
            ),
        )
        .values(
            locked=True,
            locked_by=holder_id,
            locked_by_office_id=office_id,
            locked_at=now,
            expires_at=expires_at,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount == 1:
        logger.info(
            "Automation lease granted to %s",
            holder_id,
            extra=build_log_context(office_id=office_id),
        )
        return Granted(Lease(resource, holder_id, office_id, expires_at))

    row = _current(db, resource)
    return Denied(
        holder_id=row.locked_by if row else None,
        expires_at=row.expires_at if row else None,
    )


def renew(
    db: Session,
    lease: Lease,
    ttl_seconds: int | None = None,
    *,
    now: datetime | None = None,
) -> LeaseResult:
    """Push out ``expires_at``. Fails once the lease has expired or changed hands."""
    now = now or utc_now()
    ttl = ttl_seconds or settings.AUTOMATION_LEASE_TTL_SECONDS
    expires_at = now + timedelta(seconds=ttl)
    result = db.execute(
        update(AutomationLease)
        .where(
            AutomationLease.resource == lease.resource,
            AutomationLease.locked.is_(True),
            AutomationLease.locked_by == lease.holder_id,
            AutomationLease.expires_at > now,
        )
        .values(expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 1:
        return Granted(Lease(lease.resource, lease.holder_id, lease.office_id, expires_at))
    row = _current(db, lease.resource)
    return Denied(
        holder_id=row.locked_by if row else None,
        expires_at=row.expires_at if row else None,
    )


def release(db: Session, lease: Lease) -> bool:
    result = db.execute(
        update(AutomationLease)
        .where(
            AutomationLease.resource == lease.resource,
            AutomationLease.locked_by == lease.holder_id,
        )
        .values(
            locked=False,
            locked_by=None,
            locked_by_office_id=None,
            locked_at=None,
            expires_at=None,
            session_handle=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    released = result.rowcount == 1
    if released:
        logger.info(
            "Automation lease released by %s",
            lease.holder_id,
            extra=build_log_context(office_id=lease.office_id),
        )
    return released


def set_session_handle(db: Session, lease: Lease, handle: str | None) -> bool:
    result = db.execute(
        update(AutomationLease)
        .where(
            AutomationLease.resource == lease.resource,
            AutomationLease.locked_by == lease.holder_id,
        )
        .values(session_handle=handle)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def current_lease(
    db: Session, *, resource: str = MAIL_AUTOMATION_RESOURCE, now: datetime | None = None
) -> Lease | None:
    """The live lease on ``resource``, if any. Expired holds count as free."""
    now = now or utc_now()
    row = _current(db, resource)
    if row is None or not row.locked or row.expires_at is None or row.expires_at <= now:
        return None
    return Lease(row.resource, row.locked_by, row.locked_by_office_id, row.expires_at)


def get_state(
    db: Session, *, resource: str = MAIL_AUTOMATION_RESOURCE, now: datetime | None = None
) -> dict:
    now = now or utc_now()
    row = _current(db, resource)
    lease = current_lease(db, resource=resource, now=now)
    return {
        "resource": resource,
        "locked": lease is not None,
        "holder_id": lease.holder_id if lease else None,
        "office_id": str(lease.office_id) if lease and lease.office_id else None,
        "expires_at": lease.expires_at if lease else None,
        "session_handle": row.session_handle if row and lease else None,
    }
