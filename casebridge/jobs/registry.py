"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from casebridge.db.enums import JobKind
from casebridge.jobs.handlers import email, maintenance, sync, triage

JobHandler = Callable[[object, object], Awaitable[dict | None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobKind.TRIAGE_PROCESS.value: triage.process_triage,
    JobKind.EMAIL_DELIVER.value: email.process_email_deliver,
    JobKind.SYNC_PUSH.value: sync.process_sync_push,
    JobKind.QUEUE_PURGE.value: maintenance.process_queue_purge,
}


def resolve_job_handler(kind: str) -> JobHandler:
    handler = JOB_HANDLERS.get(kind)
    if not handler:
        raise ValueError(f"Unknown job kind: {kind}")
    return handler
