"""Dual-write retry job handler."""

from __future__ import annotations

from casebridge.jobs.utils import JobFailed, JobRetry, is_final_attempt
from casebridge.services import legacy_client, sync_service


async def process_sync_push(db, job) -> dict:
    payload = job.payload or {}
    if not payload.get("entity_type") or not payload.get("entity_id"):
        raise JobFailed("Missing entity_type or entity_id in job payload")

    try:
        client = legacy_client.build_client(db, job.office_id)
    except legacy_client.AuthError as exc:
        if is_final_attempt(job):
            sync_service.mark_sync_failed(db, job, str(exc))
        raise JobRetry(str(exc), delay_seconds=sync_service.sync_backoff_seconds(job.attempt_count)) from exc

    try:
        return await sync_service.push_queued(db, job, client=client)
    except sync_service.PermanentSyncError as exc:
        raise JobFailed(str(exc)) from exc
    except sync_service.RetryableSyncError as exc:
        if exc.ambiguous and not payload.get("ambiguous"):
            # Next attempt must read legacy before resending
            job.payload = {**(job.payload or {}), "ambiguous": True}
            db.commit()
        if is_final_attempt(job):
            if not isinstance(exc, sync_service.LinkPending):
                sync_service.mark_sync_failed(db, job, str(exc))
            raise JobFailed(str(exc)) from exc
        raise JobRetry(str(exc), delay_seconds=sync_service.sync_backoff_seconds(job.attempt_count)) from exc
    finally:
        await client.aclose()
