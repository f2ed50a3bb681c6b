"""Triage router - queue triage, read suggestions, submit decisions."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from casebridge.core.deps import get_db, get_legacy_client, get_office
from casebridge.core.rate_limit import WRITE_LIMIT, limiter
from casebridge.db.models import Office
from casebridge.schemas.triage import (
    DecisionResult,
    DecisionSubmit,
    SuggestionRead,
    TriageQueued,
    TriageRequest,
)
from casebridge.services import triage_service
from casebridge.services.legacy_client import LegacyApiClient

router = APIRouter(tags=["Triage"])


@router.post("/{message_id}/triage", response_model=TriageQueued, status_code=202)
@limiter.limit(WRITE_LIMIT)
def request_triage(
    request: Request,
    message_id: UUID,
    data: TriageRequest | None = None,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
):
    """Queue the triage pipeline for a message. Poll ``GET /jobs/{id}`` for progress."""
    try:
        job = triage_service.request_triage(
            db, office.id, message_id, force=bool(data and data.force)
        )
    except triage_service.MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    except triage_service.SuggestionLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return TriageQueued(job_id=job.id, state=job.state)


@router.get("/{message_id}/suggestion", response_model=SuggestionRead)
def get_suggestion(
    message_id: UUID,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
):
    try:
        return triage_service.get_suggestion(db, office.id, message_id)
    except triage_service.MessageNotFound:
        raise HTTPException(status_code=404, detail="Message not found")
    except triage_service.SuggestionNotFound:
        raise HTTPException(status_code=404, detail="No suggestion yet")


@router.post("/{message_id}/decision", response_model=DecisionResult)
@limiter.limit(WRITE_LIMIT)
async def submit_decision(
    request: Request,
    message_id: UUID,
    data: DecisionSubmit,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
):
    """Accept, modify or reject a suggestion and carry it out in legacy."""
    try:
        return await triage_service.submit_decision(
            db,
            office.id,
            message_id,
            decision=data.decision.value,
            decided_by=data.decided_by,
            client=client,
            modifications=data.modifications,
            reply=data.reply.model_dump() if data.reply else None,
        )
    except (triage_service.MessageNotFound, triage_service.SuggestionNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except triage_service.SuggestionLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except triage_service.InvalidDecision as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except triage_service.DecisionRejected as exc:
        raise HTTPException(status_code=422, detail=f"Legacy rejected the change: {exc.reason}")
