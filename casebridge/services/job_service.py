"""Job queue: scheduling, atomic claiming, retries and status queries."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from casebridge.core.config import settings
from casebridge.core.structured_logging import build_log_context
from casebridge.db.enums import TERMINAL_JOB_STATES, JobState
from casebridge.db.models import Job
from casebridge.db.types import utc_now

logger = logging.getLogger(__name__)

CLAIMABLE_STATES = (JobState.CREATED.value, JobState.RETRY.value)
_TERMINAL = tuple(state.value for state in TERMINAL_JOB_STATES)


class JobServiceError(Exception):
    pass


class JobNotFoundError(JobServiceError):
    pass


class JobNotCancellableError(JobServiceError):
    pass


def compute_backoff_seconds(
    attempt: int,
    *,
    base: float | None = None,
    cap: float | None = None,
) -> float:
    """Exponential backoff (factor 2) for the given 1-based attempt."""
    base = settings.JOB_BACKOFF_BASE_SECONDS if base is None else base
    cap = settings.JOB_BACKOFF_CAP_SECONDS if cap is None else cap
    return min(cap, base * (2 ** max(0, attempt - 1)))


def schedule_job(
    db: Session,
    kind: str,
    payload: dict,
    *,
    office_id: uuid.UUID | None = None,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    max_attempts: int | None = None,
    commit: bool = True,
) -> Job:
    """
    Schedule a new background job.

    With an idempotency key, an existing job for the same key is returned
    instead of creating a duplicate.
    """
    if idempotency_key:
        existing = db.execute(
            select(Job).where(Job.idempotency_key == idempotency_key)
        ).scalars().first()
        if existing:
            return existing

    job = Job(
        office_id=office_id,
        kind=kind,
        payload=payload,
        state=JobState.CREATED.value,
        attempt_count=0,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        next_attempt_at=run_at or utc_now(),
        idempotency_key=idempotency_key,
        output={},
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    logger.info(
        "Scheduled job",
        extra=build_log_context(office_id=office_id, job_id=job.id, kind=kind),
    )
    return job


def get_job(db: Session, job_id: uuid.UUID, office_id: uuid.UUID | None = None) -> Job | None:
    """Get job by ID, optionally scoped to an office."""
    job = db.get(Job, job_id)
    if job is None:
        return None
    if office_id is not None and job.office_id != office_id:
        return None
    return job


def claim_job(
    db: Session,
    worker_id: str,
    *,
    kinds: Iterable[str] | None = None,
    now: datetime | None = None,
    lease_seconds: int | None = None,
) -> Job | None:
    """
    Atomically claim the next eligible job for ``worker_id``.

    The transition to ``active`` is a conditional UPDATE on the job's current
    state, so when two workers race for one row only one update matches.
    Jobs flagged for cancellation are closed here instead of being run.
    """
    now = now or utc_now()
    lease_seconds = lease_seconds or settings.JOB_LEASE_SECONDS

    stmt = (
        select(Job.id, Job.cancel_requested)
        .where(Job.state.in_(CLAIMABLE_STATES), Job.next_attempt_at <= now)
        .order_by(Job.next_attempt_at, Job.created_at)
        .limit(10)
        .with_for_update(skip_locked=True)
    )
    if kinds:
        stmt = stmt.where(Job.kind.in_(list(kinds)))
    candidates = db.execute(stmt).all()

    for job_id, cancel_requested in candidates:
        if cancel_requested:
            db.execute(
                update(Job)
                .where(Job.id == job_id, Job.state.in_(CLAIMABLE_STATES))
                .values(state=JobState.CANCELLED.value, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            continue

        result = db.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.state.in_(CLAIMABLE_STATES),
                Job.cancel_requested.is_(False),
            )
            .values(
                state=JobState.ACTIVE.value,
                locked_by=worker_id,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                attempt_count=Job.attempt_count + 1,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            job = db.get(Job, job_id, populate_existing=True)
            logger.info(
                "Claimed job (attempt %s/%s)",
                job.attempt_count,
                job.max_attempts,
                extra=build_log_context(office_id=job.office_id, job_id=job.id, kind=job.kind),
            )
            return job

    db.commit()
    return None


def requeue_expired(db: Session, *, now: datetime | None = None) -> int:
    """
    Return jobs whose worker lease lapsed to the queue.

    A worker that crashed mid-handler leaves its job ``active``; once the lease
    expires the job is retried, or failed if it has no attempts left.
    """
    now = now or utc_now()
    expired = (
        Job.state == JobState.ACTIVE.value,
        Job.lease_expires_at.is_not(None),
        Job.lease_expires_at < now,
    )
    failed = db.execute(
        update(Job)
        .where(*expired, Job.attempt_count >= Job.max_attempts)
        .values(
            state=JobState.FAILED.value,
            error="Worker lease expired",
            locked_by=None,
            lease_expires_at=None,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    requeued = db.execute(
        update(Job)
        .where(*expired)
        .values(
            state=JobState.RETRY.value,
            locked_by=None,
            lease_expires_at=None,
            next_attempt_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if failed or requeued:
        logger.warning("Expired job leases: %s requeued, %s failed", requeued, failed)
    return (requeued or 0) + (failed or 0)


def extend_lease(
    db: Session,
    job_id: uuid.UUID,
    worker_id: str,
    *,
    now: datetime | None = None,
    lease_seconds: int | None = None,
) -> bool:
    """Push out the lease on a job ``worker_id`` still holds. False once it lost the job."""
    now = now or utc_now()
    lease_seconds = lease_seconds or settings.JOB_LEASE_SECONDS
    result = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.state == JobState.ACTIVE.value, Job.locked_by == worker_id)
        .values(lease_expires_at=now + timedelta(seconds=lease_seconds), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _owns(job: Job, worker_id: str | None) -> bool:
    if job.state != JobState.ACTIVE.value:
        return False
    return worker_id is None or job.locked_by == worker_id


def _finish_cancelled(db: Session, job: Job, now: datetime) -> None:
    job.state = JobState.CANCELLED.value
    job.locked_by = None
    job.lease_expires_at = None
    job.completed_at = now
    db.commit()
    logger.info(
        "Job cancelled, attempt result discarded",
        extra=build_log_context(office_id=job.office_id, job_id=job.id, kind=job.kind),
    )


def complete_job(
    db: Session,
    job: Job,
    *,
    output: dict | None = None,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> str:
    """Mark an active job completed. Returns the resulting state."""
    now = now or utc_now()
    db.refresh(job)
    if not _owns(job, worker_id):
        logger.warning(
            "Not completing job no longer owned by this worker",
            extra=build_log_context(job_id=job.id, kind=job.kind),
        )
        return job.state
    if job.cancel_requested:
        _finish_cancelled(db, job, now)
        return job.state

    job.state = JobState.COMPLETED.value
    if output is not None:
        job.output = {**(job.output or {}), **output}
    job.error = None
    job.locked_by = None
    job.lease_expires_at = None
    job.completed_at = now
    db.commit()
    return job.state


def fail_job(
    db: Session,
    job: Job,
    error: str,
    *,
    retryable: bool = True,
    output: dict | None = None,
    worker_id: str | None = None,
    delay_seconds: float | None = None,
    now: datetime | None = None,
) -> str:
    """
    Record a failed attempt.

    Retryable failures with attempts left go to ``retry`` with backoff;
    everything else is terminal ``failed``.
    """
    now = now or utc_now()
    db.refresh(job)
    if not _owns(job, worker_id):
        return job.state
    if job.cancel_requested:
        _finish_cancelled(db, job, now)
        return job.state

    job.error = error[:2000]
    if output is not None:
        job.output = {**(job.output or {}), **output}
    job.locked_by = None
    job.lease_expires_at = None

    if retryable and job.attempt_count < job.max_attempts:
        delay = delay_seconds if delay_seconds is not None else compute_backoff_seconds(job.attempt_count)
        job.state = JobState.RETRY.value
        job.next_attempt_at = now + timedelta(seconds=delay)
        logger.info(
            "Job will retry in %.1fs",
            delay,
            extra=build_log_context(office_id=job.office_id, job_id=job.id, kind=job.kind),
        )
    else:
        job.state = JobState.FAILED.value
        job.completed_at = now
        logger.error(
            "Job failed after %s attempt(s): %s",
            job.attempt_count,
            error,
            extra=build_log_context(office_id=job.office_id, job_id=job.id, kind=job.kind),
        )
    db.commit()
    return job.state


def save_output(db: Session, job: Job, output: dict) -> None:
    """Persist partial results (e.g. finished pipeline steps) mid-run."""
    job.output = {**(job.output or {}), **output}
    db.commit()


def cancel_job(db: Session, job: Job, *, now: datetime | None = None) -> Job:
    """
    Request cancellation.

    Queued jobs are cancelled straight away. An active job keeps running its
    current attempt (legacy calls cannot be interrupted) and the result is
    discarded when it finishes.
    """
    now = now or utc_now()
    if job.state in _TERMINAL:
        raise JobNotCancellableError(f"Job is already {job.state}")
    job.cancel_requested = True
    if job.state in CLAIMABLE_STATES:
        job.state = JobState.CANCELLED.value
        job.completed_at = now
    db.commit()
    db.refresh(job)
    return job


def get_status(db: Session, job_id: uuid.UUID, office_id: uuid.UUID | None = None) -> dict[str, Any]:
    job = get_job(db, job_id, office_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return {
        "id": job.id,
        "kind": job.kind,
        "state": job.state,
        "attempt_count": job.attempt_count,
        "max_attempts": job.max_attempts,
        "cancel_requested": job.cancel_requested,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "next_attempt_at": job.next_attempt_at,
        "output": job.output or {},
        "error": job.error,
    }


def queue_health(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    """Per-kind pending/active counts and whether workers look stalled."""
    now = now or utc_now()
    rows = db.execute(
        select(Job.kind, Job.state, func.count())
        .where(Job.state.in_((JobState.CREATED.value, JobState.RETRY.value, JobState.ACTIVE.value)))
        .group_by(Job.kind, Job.state)
    ).all()
    kinds: dict[str, dict[str, int]] = {}
    for kind, state, count in rows:
        entry = kinds.setdefault(kind, {"pending": 0, "active": 0})
        if state == JobState.ACTIVE.value:
            entry["active"] += count
        else:
            entry["pending"] += count

    last_claimed_at = db.execute(select(func.max(Job.started_at))).scalar()

    stall_cutoff = now - timedelta(seconds=settings.WORKER_STALL_SECONDS)
    overdue = db.execute(
        select(func.count())
        .select_from(Job)
        .where(Job.state.in_(CLAIMABLE_STATES), Job.next_attempt_at < stall_cutoff)
    ).scalar() or 0
    stalled = overdue > 0 and (last_claimed_at is None or last_claimed_at < stall_cutoff)

    return {
        "kinds": kinds,
        "last_claimed_at": last_claimed_at,
        "overdue": overdue,
        "stalled": stalled,
    }


def purge_terminal_jobs(db: Session, *, older_than_days: int | None = None, now: datetime | None = None) -> int:
    """Delete terminal jobs past the retention window."""
    now = now or utc_now()
    days = settings.QUEUE_RETENTION_DAYS if older_than_days is None else older_than_days
    cutoff = now - timedelta(days=days)
    result = db.execute(
        delete(Job)
        .where(Job.state.in_(_TERMINAL), Job.completed_at.is_not(None), Job.completed_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0
