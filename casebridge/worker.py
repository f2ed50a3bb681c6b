"""
Background worker for queued jobs and the reconciliation poller.

Usage:
    python -m casebridge.worker

Runs ``WORKER_CONCURRENCY`` job loops, a maintenance loop that returns jobs
with lapsed leases to the queue and schedules the daily purge, and (unless
disabled) the legacy poller.
"""

import asyncio
import logging
import os
import socket

from sqlalchemy import select

from casebridge.core.config import settings
from casebridge.core.structured_logging import build_log_context
from casebridge.db.enums import JobKind
from casebridge.db.models import LegacyCredential
from casebridge.db.session import SessionLocal
from casebridge.db.types import utc_now
from casebridge.jobs.registry import resolve_job_handler
from casebridge.jobs.utils import JobFailed, JobRetry
from casebridge.services import job_service, legacy_client, reconciliation_service

logger = logging.getLogger(__name__)


def _worker_id(index: int) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


async def _keep_lease(job_id, worker_id: str, interval: float) -> None:
    """Renew a running job's lease until cancelled or until the job is lost."""
    while True:
        await asyncio.sleep(interval)
        with SessionLocal() as db:
            try:
                if not job_service.extend_lease(db, job_id, worker_id):
                    logger.warning("Lost lease on job %s", job_id)
                    return
            except Exception as e:
                db.rollback()
                logger.error(f"Error extending job lease: {e}")


async def run_job(db, job, worker_id: str, *, heartbeat_seconds: float | None = None) -> str:
    """Execute one claimed job and record its outcome. Returns the job's new state."""
    log_context = build_log_context(office_id=job.office_id, job_id=job.id, kind=job.kind)
    interval = heartbeat_seconds or settings.JOB_LEASE_SECONDS / 3
    heartbeat = asyncio.create_task(_keep_lease(job.id, worker_id, interval))
    try:
        handler = resolve_job_handler(job.kind)
        output = await handler(db, job)
    except JobRetry as exc:
        db.rollback()
        return job_service.fail_job(
            db, job, str(exc), retryable=True, worker_id=worker_id, delay_seconds=exc.delay_seconds
        )
    except (JobFailed, ValueError) as exc:
        db.rollback()
        return job_service.fail_job(db, job, str(exc), retryable=False, worker_id=worker_id)
    except Exception as exc:
        db.rollback()
        logger.exception("Job handler crashed", extra=log_context)
        return job_service.fail_job(db, job, f"{type(exc).__name__}: {exc}", worker_id=worker_id)
    finally:
        heartbeat.cancel()

    state = job_service.complete_job(db, job, output=output, worker_id=worker_id)
    logger.info("Job finished: %s", state, extra=log_context)
    return state


async def worker_loop(index: int = 0, stop: asyncio.Event | None = None) -> None:
    """Claim and run jobs until ``stop`` is set."""
    worker_id = _worker_id(index)
    logger.info("Worker %s starting", worker_id)
    stop = stop or asyncio.Event()
    while not stop.is_set():
        ran = False
        with SessionLocal() as db:
            try:
                job = job_service.claim_job(db, worker_id)
                if job is not None:
                    ran = True
                    await run_job(db, job, worker_id)
            except Exception as e:
                db.rollback()
                logger.error(f"Error in worker loop: {e}")
        if not ran:
            await asyncio.sleep(settings.WORKER_POLL_INTERVAL_SECONDS)


def schedule_daily_purge(db) -> None:
    today = utc_now().date().isoformat()
    job_service.schedule_job(
        db,
        JobKind.QUEUE_PURGE.value,
        {"older_than_days": settings.QUEUE_RETENTION_DAYS},
        idempotency_key=f"queue_purge:{today}",
    )


async def maintenance_loop(stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    while not stop.is_set():
        with SessionLocal() as db:
            try:
                job_service.requeue_expired(db)
                schedule_daily_purge(db)
            except Exception as e:
                db.rollback()
                logger.error(f"Error in maintenance loop: {e}")
        await asyncio.sleep(max(settings.WORKER_POLL_INTERVAL_SECONDS, 30))


async def poll_all_offices() -> None:
    """One reconciliation cycle for every office with legacy credentials."""
    with SessionLocal() as db:
        office_ids = list(db.execute(select(LegacyCredential.office_id)).scalars())
    for office_id in office_ids:
        log_context = build_log_context(office_id=office_id, route="poller", method="background")
        with SessionLocal() as db:
            try:
                async with legacy_client.build_client(db, office_id) as client:
                    await reconciliation_service.poll_office(db, office_id, client=client)
            except Exception:
                # One office failing must not stop the others
                logger.exception("Reconciliation poll failed", extra=log_context)


async def poller_loop(stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    logger.info("Poller starting (interval: %ss)", settings.SYNC_POLL_INTERVAL_SECONDS)
    while not stop.is_set():
        await poll_all_offices()
        await asyncio.sleep(settings.SYNC_POLL_INTERVAL_SECONDS)


async def run_worker(stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    tasks = [worker_loop(i, stop) for i in range(settings.WORKER_CONCURRENCY)]
    tasks.append(maintenance_loop(stop))
    if settings.SYNC_POLLER_ENABLED:
        tasks.append(poller_loop(stop))
    logger.info(
        f"Worker starting (concurrency: {settings.WORKER_CONCURRENCY}, "
        f"poll interval: {settings.WORKER_POLL_INTERVAL_SECONDS}s)"
    )
    await asyncio.gather(*tasks)


def main() -> None:
    """Entry point for the worker."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
