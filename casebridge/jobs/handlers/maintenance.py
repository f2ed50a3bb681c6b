"""Queue housekeeping job handlers."""

from __future__ import annotations

from casebridge.services import job_service, outbox_service


async def process_queue_purge(db, job) -> dict:
    """Delete finished jobs and outbox rows past the retention window."""
    payload = job.payload or {}
    days = payload.get("older_than_days")
    jobs_deleted = job_service.purge_terminal_jobs(db, older_than_days=days)
    outbox_deleted = outbox_service.purge_processed(db, older_than_days=days)
    return {"jobs_deleted": jobs_deleted, "outbox_deleted": outbox_deleted}
