"""Jobs router - status polling, queue health and cancellation."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from casebridge.core.deps import get_db, get_office, require_api_key
from casebridge.db.models import Office
from casebridge.schemas.job import JobStatusRead, QueueHealthRead
from casebridge.services import job_service

router = APIRouter(tags=["Jobs"])


@router.get("/health", response_model=QueueHealthRead, dependencies=[Depends(require_api_key)])
def queue_health(db: Session = Depends(get_db)):
    """Per-kind pending/active counts and whether the worker fleet looks stalled."""
    return job_service.queue_health(db)


@router.get("/{job_id}", response_model=JobStatusRead)
def get_job(
    job_id: UUID,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
):
    try:
        return job_service.get_status(db, job_id, office.id)
    except job_service.JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/{job_id}/cancel", response_model=JobStatusRead)
def cancel_job(
    job_id: UUID,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
):
    job = job_service.get_job(db, job_id, office.id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    try:
        job_service.cancel_job(db, job)
    except job_service.JobNotCancellableError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return job_service.get_status(db, job_id, office.id)
