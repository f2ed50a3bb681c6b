"""Triage pipeline job handler."""

from __future__ import annotations

import logging
from uuid import UUID

from casebridge.core.structured_logging import build_log_context
from casebridge.jobs.utils import JobFailed, JobRetry, is_final_attempt
from casebridge.services import classifier_service, legacy_client, triage_service

logger = logging.getLogger(__name__)


async def process_triage(db, job) -> dict:
    payload = job.payload or {}
    message_id = payload.get("message_id")
    if not message_id:
        raise JobFailed("Missing message_id in job payload")

    classifier = classifier_service.get_classifier()
    try:
        client = legacy_client.build_client(db, job.office_id)
    except (legacy_client.AuthError, ValueError) as exc:
        # Triage itself is read-only; only autonomous decisions need legacy
        logger.info(
            "No legacy client for triage: %s",
            exc,
            extra=build_log_context(office_id=job.office_id, job_id=job.id, kind=job.kind),
        )
        client = None

    try:
        return await triage_service.process_message(db, job, classifier=classifier, client=client)
    except triage_service.MessageNotFound as exc:
        raise JobFailed(str(exc)) from exc
    except triage_service.TriageStepFailed as exc:
        if not exc.retryable or is_final_attempt(job):
            triage_service.mark_needs_manual_triage(db, UUID(message_id), str(exc))
        if not exc.retryable:
            raise JobFailed(str(exc)) from exc
        raise JobRetry(str(exc)) from exc
    finally:
        if client is not None:
            await client.aclose()
