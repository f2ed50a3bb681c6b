"""Automation router - interactive mail-bot sessions guarded by the automation lease."""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from casebridge.core.deps import get_db, get_office, require_api_key
from casebridge.core.rate_limit import WRITE_LIMIT, limiter
from casebridge.db.models import Office
from casebridge.schemas.automation import LeaseRead, SessionAction, SessionRead, SessionStart
from casebridge.services import automation_lease_service
from casebridge.services.automation_client import (
    AutomationClient,
    AutomationError,
    get_automation_client,
)

router = APIRouter(tags=["Automation"])


def _held_lease(db: Session, office: Office, holder_id: str) -> automation_lease_service.Lease:
    lease = automation_lease_service.current_lease(db)
    if lease is None or lease.holder_id != holder_id or lease.office_id != office.id:
        raise HTTPException(status_code=409, detail="Automation lease is not held by this holder")
    return lease


def _denied(result: automation_lease_service.Denied) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={
            "message": "Automation session is in use",
            "holder_id": result.holder_id,
            "expires_at": result.expires_at.isoformat() if result.expires_at else None,
        },
    )


@router.get("/lease", response_model=LeaseRead, dependencies=[Depends(require_api_key)])
def get_lease(db: Session = Depends(get_db)):
    return automation_lease_service.get_state(db)


@router.post("/session/start", response_model=SessionRead)
@limiter.limit(WRITE_LIMIT)
async def start_session(
    request: Request,
    data: SessionStart,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    bot: AutomationClient = Depends(get_automation_client),
):
    """Take the lease and open an interactive login session on the bot."""
    result = automation_lease_service.acquire(db, office.id, data.holder_id, data.ttl_seconds)
    if isinstance(result, automation_lease_service.Denied):
        raise _denied(result)
    lease = result.lease
    try:
        detail = await bot.start_session(office.id, data.holder_id)
    except AutomationError as exc:
        automation_lease_service.release(db, lease)
        raise HTTPException(status_code=502, detail=str(exc))
    handle = detail.get("session_handle")
    automation_lease_service.set_session_handle(db, lease, handle)
    return SessionRead(
        holder_id=lease.holder_id, expires_at=lease.expires_at, session_handle=handle, detail=detail
    )


@router.post("/session/renew", response_model=SessionRead)
def renew_session(
    data: SessionAction,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
):
    lease = _held_lease(db, office, data.holder_id)
    result = automation_lease_service.renew(db, lease, data.ttl_seconds)
    if isinstance(result, automation_lease_service.Denied):
        raise _denied(result)
    return SessionRead(holder_id=result.lease.holder_id, expires_at=result.lease.expires_at)


@router.post("/session/capture", response_model=SessionRead)
@limiter.limit(WRITE_LIMIT)
async def capture_session(
    request: Request,
    data: SessionAction,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    bot: AutomationClient = Depends(get_automation_client),
):
    """Persist the logged-in session on the bot, then give up the lease."""
    lease = _held_lease(db, office, data.holder_id)
    handle = automation_lease_service.get_state(db)["session_handle"]
    if not handle:
        raise HTTPException(status_code=409, detail="No interactive session to capture")
    try:
        detail = await bot.capture_session(office.id, handle)
    except AutomationError as exc:
        # Lease is kept so the holder can retry or cancel
        raise HTTPException(status_code=502, detail=str(exc))
    automation_lease_service.release(db, lease)
    return SessionRead(holder_id=lease.holder_id, expires_at=lease.expires_at, detail=detail)


@router.post("/session/cancel", response_model=SessionRead)
@limiter.limit(WRITE_LIMIT)
async def cancel_session(
    request: Request,
    data: SessionAction,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    bot: AutomationClient = Depends(get_automation_client),
):
    """Abort the interactive session and release the lease."""
    lease = _held_lease(db, office, data.holder_id)
    handle = automation_lease_service.get_state(db)["session_handle"]
    try:
        detail = await bot.cancel_session(office.id, handle)
    except AutomationError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    finally:
        automation_lease_service.release(db, lease)
    return SessionRead(holder_id=lease.holder_id, expires_at=lease.expires_at, detail=detail)
