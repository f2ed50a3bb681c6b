"""
Email triage pipeline.

One ``triage_process`` job per inbound message runs these steps in order:

    parse -> match_constituent -> find_related_cases -> match_campaign
          -> build_context -> classify -> generate_suggestion -> await_decision

Each step's result is saved to ``job.output["steps"]`` as soon as it
finishes, and a retried job skips steps that already succeeded. Retrying a
classifier outage therefore reuses the same context snapshot.

The classifier only ever sees the snapshot built by ``build_context`` and its
answer is untrusted: every id it returns is checked against the snapshot's
reference data, and unknown ids are dropped and recorded on the suggestion.

Nothing reaches legacy until a decision is submitted (by a person, or by the
office's autonomous policy); ``submit_decision`` realises it through the sync
engine.
"""

from __future__ import annotations

import html
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import nh3
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from casebridge.acl import CREATE
from casebridge.core.structured_logging import build_log_context
from casebridge.db.enums import (
    EmailType,
    EntityType,
    JobKind,
    ReferenceType,
    RecommendedAction,
    TriageDecision,
    TriageStatus,
)
from casebridge.db.models import (
    Campaign,
    Case,
    Constituent,
    ContactDetail,
    Job,
    Message,
    Office,
    TriageSuggestion,
)
from casebridge.db.types import utc_now
from casebridge.schemas.triage import NewConstituent
from casebridge.services import (
    campaign_service,
    job_service,
    outbox_service,
    reference_data_service,
    sync_service,
)
from casebridge.services.classifier_service import (
    Classifier,
    ClassifierOutput,
    ClassifierUnavailable,
    keyword_tags,
)
from casebridge.services.legacy_client import LegacyApiClient, LegacyApiError

logger = logging.getLogger(__name__)

STEPS = (
    "parse",
    "match_constituent",
    "find_related_cases",
    "match_campaign",
    "build_context",
    "classify",
    "generate_suggestion",
    "await_decision",
)

MAX_TEXT_CHARS = 8000
MAX_RELATED_CASES = 10

_SPACE_RE = re.compile(r"\s+")


# =============================================================================
# Errors
# =============================================================================


class TriageError(Exception):
    pass


class MessageNotFound(TriageError):
    pass


class SuggestionNotFound(TriageError):
    pass


class SuggestionLocked(TriageError):
    """A decision is already recorded; the suggestion is frozen."""


class InvalidDecision(TriageError):
    pass


class DecisionRejected(TriageError):
    """Legacy refused the write that would realise the decision."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TriageStepFailed(TriageError):
    def __init__(self, step: str, error: BaseException):
        super().__init__(f"{step}: {error}")
        self.step = step
        self.error = error

    @property
    def retryable(self) -> bool:
        return not isinstance(self.error, (MessageNotFound, SuggestionLocked))


# =============================================================================
# Scheduling and lookups
# =============================================================================


def request_triage(
    db: Session, office_id: uuid.UUID, message_id: uuid.UUID, *, force: bool = False
) -> Job:
    """Queue triage for a message. ``force`` re-runs a message already triaged."""
    message = _get_message(db, office_id, message_id)
    suggestion = _suggestion_for(db, message.id)
    if suggestion is not None and suggestion.decision != TriageDecision.PENDING.value:
        raise SuggestionLocked("A decision has already been recorded for this message")
    key = f"triage:{message.id}"
    if force:
        key = f"{key}:{uuid.uuid4().hex[:12]}"
    return job_service.schedule_job(
        db,
        JobKind.TRIAGE_PROCESS.value,
        {"message_id": str(message.id)},
        office_id=office_id,
        idempotency_key=key,
    )


def _get_message(db: Session, office_id: uuid.UUID, message_id: uuid.UUID) -> Message:
    message = db.get(Message, message_id)
    if message is None or message.office_id != office_id or message.deleted_at is not None:
        raise MessageNotFound(f"Message {message_id} not found")
    return message


def _suggestion_for(db: Session, message_id: uuid.UUID) -> TriageSuggestion | None:
    return db.execute(
        select(TriageSuggestion).where(TriageSuggestion.message_id == message_id)
    ).scalars().first()


def get_suggestion(db: Session, office_id: uuid.UUID, message_id: uuid.UUID) -> TriageSuggestion:
    message = _get_message(db, office_id, message_id)
    suggestion = _suggestion_for(db, message.id)
    if suggestion is None:
        raise SuggestionNotFound(f"No suggestion for message {message_id}")
    return suggestion


def mark_needs_manual_triage(db: Session, message_id: uuid.UUID, error: str | None = None) -> None:
    message = db.get(Message, message_id)
    if message is None:
        return
    message.triage_status = TriageStatus.NEEDS_MANUAL_TRIAGE.value
    db.commit()
    logger.warning(
        "Message needs manual triage: %s",
        error or "unknown error",
        extra=build_log_context(office_id=message.office_id, entity_type=EntityType.MESSAGE.value),
    )


# =============================================================================
# Pipeline steps
# =============================================================================


@dataclass
class TriageRun:
    db: Session
    job: Job
    office_id: uuid.UUID
    message: Message
    classifier: Classifier
    client: LegacyApiClient | None = None
    results: dict[str, Any] = field(default_factory=dict)

    def result(self, step: str) -> Any:
        return (self.results.get(step) or {}).get("result")


def html_to_text(value: str | None) -> str:
    text = html.unescape(nh3.clean(value or "", tags=set()))
    return _SPACE_RE.sub(" ", text).strip()


async def _parse(run: TriageRun) -> dict[str, Any]:
    message = run.message
    sender = (message.from_address or "").strip().lower() or None
    return {
        "message_id": str(message.id),
        "subject": (message.subject or "").strip(),
        "text": html_to_text(message.html_body)[:MAX_TEXT_CHARS],
        "sender": sender,
        "received_at": message.received_at.isoformat() if message.received_at else None,
    }


async def _match_constituent(run: TriageRun) -> dict[str, Any]:
    sender = run.result("parse")["sender"]
    if not sender:
        return {"status": "unmatched", "reason": "no sender address"}
    row = run.db.execute(
        select(ContactDetail, Constituent)
        .join(Constituent, Constituent.id == ContactDetail.constituent_id)
        .where(
            ContactDetail.office_id == run.office_id,
            ContactDetail.contact_type == "email",
            ContactDetail.normalized_value == sender,
            ContactDetail.deleted_at.is_(None),
            Constituent.deleted_at.is_(None),
        )
    ).first()
    if row is None:
        return {"status": "unmatched"}
    _, constituent = row
    return {
        "status": "matched",
        "constituent_id": str(constituent.id),
        "external_id": constituent.external_id,
        "name": constituent.display_name,
    }


async def _find_related_cases(run: TriageRun) -> dict[str, Any]:
    match = run.result("match_constituent")
    if match.get("status") != "matched":
        return {"skipped": True, "cases": []}

    closed = reference_data_service.closed_status_ids(run.db, run.office_id)
    last_activity = func.coalesce(Case.legacy_updated_at, Case.updated_at)
    stmt = (
        select(Case)
        .where(
            Case.office_id == run.office_id,
            Case.constituent_id == uuid.UUID(match["constituent_id"]),
            Case.deleted_at.is_(None),
        )
        .order_by(last_activity.desc(), Case.id)
    )
    cases = []
    for case in run.db.execute(stmt).scalars():
        if case.status_id is not None and case.status_id in closed:
            continue
        activity = case.legacy_updated_at or case.updated_at
        cases.append(
            {
                "id": str(case.id),
                "external_id": case.external_id,
                "summary": case.summary,
                "case_type_id": case.case_type_id,
                "status_id": case.status_id,
                "last_activity_at": activity.isoformat() if activity else None,
            }
        )
        if len(cases) >= MAX_RELATED_CASES:
            break
    return {"skipped": False, "cases": cases}


async def _match_campaign(run: TriageRun) -> dict[str, Any]:
    parsed = run.result("parse")
    matches = campaign_service.match_campaigns(
        run.db, run.office_id, parsed["subject"], run.message.html_body
    )
    return {"campaigns": [match.to_dict() for match in matches]}


async def _build_context(run: TriageRun) -> dict[str, Any]:
    parsed = run.result("parse")
    return {
        "message": {
            "id": parsed["message_id"],
            "subject": parsed["subject"],
            "text": parsed["text"],
            "sender": parsed["sender"],
            "received_at": parsed["received_at"],
        },
        "constituent": run.result("match_constituent"),
        "cases": run.result("find_related_cases")["cases"],
        "campaigns": run.result("match_campaign")["campaigns"],
        "reference_data": reference_data_service.snapshot(run.db, run.office_id),
    }


async def _classify(run: TriageRun) -> dict[str, Any]:
    context = run.result("build_context")
    raw = await run.classifier.classify(context)
    check_classifier_output(raw)
    return {"classifier": run.classifier.name, "raw": raw}


async def _generate_suggestion(run: TriageRun) -> dict[str, Any]:
    context = run.result("build_context")
    classified = run.result("classify")
    fields, dropped = validate_suggestion(context, classified["raw"])

    constituent = context["constituent"]
    suggestion = _suggestion_for(run.db, run.message.id)
    if suggestion is None:
        suggestion = TriageSuggestion(office_id=run.office_id, message_id=run.message.id)
        run.db.add(suggestion)
    elif suggestion.decision != TriageDecision.PENDING.value:
        raise SuggestionLocked("A decision has already been recorded for this message")

    suggestion.job_id = run.job.id
    for name, value in fields.items():
        setattr(suggestion, name, value)
    suggestion.matched_constituent_id = (
        uuid.UUID(constituent["constituent_id"]) if constituent.get("status") == "matched" else None
    )
    suggestion.matched_case_ids = [case["id"] for case in context["cases"]]
    best_campaign = context["campaigns"][0] if context["campaigns"] else None
    suggestion.campaign_confidence = best_campaign["confidence"] if best_campaign else None
    suggestion.context_snapshot = context
    suggestion.raw_response = classified["raw"]
    suggestion.classifier_name = classified["classifier"]
    suggestion.dropped_ids = dropped

    run.message.triage_status = TriageStatus.SUGGESTED.value
    run.message.classification = fields["email_type"]
    run.db.commit()
    run.db.refresh(suggestion)

    if dropped:
        logger.info(
            "Dropped classifier ids not in reference data: %s",
            sorted(dropped),
            extra=build_log_context(office_id=run.office_id, job_id=run.job.id, step="generate_suggestion"),
        )
    return {
        "suggestion_id": str(suggestion.id),
        "recommended_action": suggestion.recommended_action,
        "dropped": dropped,
    }


async def _await_decision(run: TriageRun) -> dict[str, Any]:
    suggestion = _suggestion_for(run.db, run.message.id)
    office = run.db.get(Office, run.office_id)
    if (
        office is None
        or not office.autonomous_triage
        or suggestion is None
        or (suggestion.action_confidence or 0.0) < office.autonomy_threshold
    ):
        return {"status": "awaiting_decision"}

    log_context = build_log_context(office_id=run.office_id, job_id=run.job.id, step="await_decision")
    if run.client is None:
        logger.warning("Autonomous triage skipped: no legacy client", extra=log_context)
        return {"status": "awaiting_decision", "autonomous": "no legacy client"}
    try:
        result = await submit_decision(
            run.db,
            run.office_id,
            run.message.id,
            decision=TriageDecision.ACCEPTED.value,
            decided_by="autonomous",
            client=run.client,
        )
    except (InvalidDecision, DecisionRejected) as exc:
        logger.info("Autonomous triage left for review: %s", exc, extra=log_context)
        return {"status": "awaiting_decision", "autonomous": str(exc)}
    return {"status": "auto_accepted", "decision": result}


StepHandler = Callable[[TriageRun], Awaitable[dict[str, Any]]]

STEP_HANDLERS: dict[str, StepHandler] = {
    "parse": _parse,
    "match_constituent": _match_constituent,
    "find_related_cases": _find_related_cases,
    "match_campaign": _match_campaign,
    "build_context": _build_context,
    "classify": _classify,
    "generate_suggestion": _generate_suggestion,
    "await_decision": _await_decision,
}


async def process_message(
    db: Session,
    job: Job,
    *,
    classifier: Classifier,
    client: LegacyApiClient | None = None,
) -> dict[str, Any]:
    """Run (or resume) the pipeline for ``job``.

    Raises ``TriageStepFailed`` naming the step that failed; results of the
    steps before it stay in ``job.output``.
    """
    office_id = job.office_id
    message = _get_message(db, office_id, uuid.UUID(job.payload["message_id"]))
    suggestion = _suggestion_for(db, message.id)
    if suggestion is not None and suggestion.decision != TriageDecision.PENDING.value:
        return {"status": "already_decided"}

    run = TriageRun(
        db=db,
        job=job,
        office_id=office_id,
        message=message,
        classifier=classifier,
        client=client,
        results=dict((job.output or {}).get("steps") or {}),
    )
    if message.triage_status != TriageStatus.PROCESSING.value:
        message.triage_status = TriageStatus.PROCESSING.value
        db.commit()

    for step in STEPS:
        previous = run.results.get(step)
        if previous and previous.get("status") == "ok":
            continue
        log_context = build_log_context(
            office_id=office_id, job_id=job.id, kind=job.kind, step=step
        )
        started = time.monotonic()
        try:
            result = await STEP_HANDLERS[step](run)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            db.rollback()
            job_service.save_output(
                db,
                job,
                {"steps": run.results, "failed_step": step, "error": str(exc)[:2000]},
            )
            logger.warning(
                "Triage step %s failed after %dms: %s", step, duration_ms, exc, extra=log_context
            )
            raise TriageStepFailed(step, exc) from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        run.results[step] = {"status": "ok", "duration_ms": duration_ms, "result": result}
        job_service.save_output(db, job, {"steps": run.results, "failed_step": None, "error": None})
        logger.info("Triage step %s finished in %dms", step, duration_ms, extra=log_context)

    return {
        "status": run.result("await_decision")["status"],
        "suggestion_id": run.result("generate_suggestion")["suggestion_id"],
    }


# =============================================================================
# Output validation
# =============================================================================


def check_classifier_output(raw: Any) -> ClassifierOutput:
    if not isinstance(raw, dict):
        raise ClassifierUnavailable("Classifier output was not an object")
    try:
        return ClassifierOutput.model_validate(raw)
    except ValueError as exc:
        raise ClassifierUnavailable(f"Classifier output failed validation: {exc}") from exc


def _resolve_reference(value: Any, items: list[dict]) -> tuple[int | None, bool]:
    """Map a classifier id or name onto a known reference id. Second item is True when dropped."""
    if value is None or value == "":
        return None, False
    by_id = {item["id"] for item in items}
    if isinstance(value, bool):
        return None, True
    if isinstance(value, int):
        return (value, False) if value in by_id else (None, True)
    text = str(value).strip()
    if text.isdigit():
        number = int(text)
        return (number, False) if number in by_id else (None, True)
    for item in items:
        if item["name"].strip().lower() == text.lower():
            return item["id"], False
    return None, True


def validate_suggestion(context: dict[str, Any], raw: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Turn classifier output into suggestion columns using only ids present in ``context``.

    Returns ``(fields, dropped)`` where ``dropped`` maps each field to the
    rejected value(s). Pure: the same inputs always give the same result.
    """
    output = check_classifier_output(raw)
    reference = context.get("reference_data") or {}
    dropped: dict[str, Any] = {}

    def resolve(name: str, value: Any, ref_type: str) -> int | None:
        resolved, was_dropped = _resolve_reference(value, reference.get(ref_type) or [])
        if was_dropped:
            dropped[name] = value
        return resolved

    case_type_id = resolve("case_type_id", output.case_type_id, ReferenceType.CASE_TYPE.value)
    status_id = resolve("status_id", output.status_id, ReferenceType.STATUS_TYPE.value)
    category_type_id = resolve(
        "category_type_id", output.category_type_id, ReferenceType.CATEGORY_TYPE.value
    )
    assignee_id = resolve("assignee_id", output.assignee_id, ReferenceType.CASEWORKER.value)

    tags: list[int] = []
    rejected_tags = []
    for tag in output.tags:
        resolved, was_dropped = _resolve_reference(tag, reference.get(ReferenceType.TAG.value) or [])
        if was_dropped:
            rejected_tags.append(tag)
        elif resolved is not None and resolved not in tags:
            tags.append(resolved)
    if rejected_tags:
        dropped["tags"] = rejected_tags
    if not tags:
        # Model named no usable tag; fall back to tag names found in the mail
        message = context.get("message") or {}
        tags = keyword_tags(
            f"{message.get('subject') or ''} {message.get('text') or ''}",
            reference.get(ReferenceType.TAG.value) or [],
        )

    known_cases = {case["id"] for case in context.get("cases") or []}
    case_id = output.existing_case_id
    if case_id is not None and case_id not in known_cases:
        dropped["existing_case_id"] = case_id
        case_id = None

    known_campaigns = {campaign["id"] for campaign in context.get("campaigns") or []}
    campaign_id = output.campaign_id
    if campaign_id is not None and campaign_id not in known_campaigns:
        dropped["campaign_id"] = campaign_id
        campaign_id = None

    action = output.recommended_action
    if action == RecommendedAction.ADD_TO_EXISTING and case_id is None:
        dropped["recommended_action"] = action.value
        action = RecommendedAction.CREATE_CASE
    if action == RecommendedAction.ASSIGN_CAMPAIGN and campaign_id is None:
        dropped["recommended_action"] = action.value
        action = RecommendedAction.CREATE_CASE

    fields = {
        "email_type": output.email_type.value,
        "email_type_confidence": output.email_type_confidence,
        "recommended_action": action.value,
        "action_confidence": output.action_confidence,
        "suggested_case_type_id": case_type_id,
        "suggested_status_id": status_id,
        "suggested_category_type_id": category_type_id,
        "suggested_assignee_id": assignee_id,
        "suggested_priority": output.priority.value if output.priority else None,
        "suggested_tags": tags,
        "suggested_case_id": uuid.UUID(case_id) if case_id else None,
        "matched_campaign_id": uuid.UUID(campaign_id) if campaign_id else None,
        "summary": output.summary,
        "reasoning": output.reasoning,
    }
    return fields, dropped


# =============================================================================
# Decisions
# =============================================================================

MODIFIABLE_FIELDS = (
    "recommended_action",
    "case_type_id",
    "status_id",
    "category_type_id",
    "assignee_id",
    "priority",
    "tags",
    "existing_case_id",
    "campaign_id",
    "constituent_id",
    "new_constituent",
    "summary",
)

_REFERENCE_FIELDS = {
    "case_type_id": ReferenceType.CASE_TYPE.value,
    "status_id": ReferenceType.STATUS_TYPE.value,
    "category_type_id": ReferenceType.CATEGORY_TYPE.value,
    "assignee_id": ReferenceType.CASEWORKER.value,
}


def _effective_decision(
    db: Session, office_id: uuid.UUID, suggestion: TriageSuggestion, modifications: dict[str, Any]
) -> dict[str, Any]:
    unknown = set(modifications) - set(MODIFIABLE_FIELDS)
    if unknown:
        raise InvalidDecision(f"Cannot modify: {', '.join(sorted(unknown))}")

    effective: dict[str, Any] = {
        "recommended_action": suggestion.recommended_action,
        "case_type_id": suggestion.suggested_case_type_id,
        "status_id": suggestion.suggested_status_id,
        "category_type_id": suggestion.suggested_category_type_id,
        "assignee_id": suggestion.suggested_assignee_id,
        "priority": suggestion.suggested_priority,
        "tags": list(suggestion.suggested_tags or []),
        "existing_case_id": suggestion.suggested_case_id,
        "campaign_id": suggestion.matched_campaign_id,
        "constituent_id": suggestion.matched_constituent_id,
        "new_constituent": None,
        "summary": suggestion.summary,
    }
    for name, value in modifications.items():
        if name in _REFERENCE_FIELDS and value is not None:
            if value not in reference_data_service.valid_ids(db, office_id, _REFERENCE_FIELDS[name]):
                raise InvalidDecision(f"Unknown {name}: {value}")
        if name in ("existing_case_id", "campaign_id", "constituent_id") and value is not None:
            try:
                value = uuid.UUID(str(value))
            except ValueError as exc:
                raise InvalidDecision(f"Invalid {name}: {value}") from exc
        if name == "new_constituent" and value is not None:
            try:
                value = NewConstituent.model_validate(value).model_dump()
            except ValueError as exc:
                raise InvalidDecision(f"Invalid new_constituent: {exc}") from exc
        if name == "recommended_action":
            try:
                value = RecommendedAction(value).value
            except ValueError as exc:
                raise InvalidDecision(f"Unknown action: {value}") from exc
        effective[name] = value
    if effective["new_constituent"] and modifications.get("constituent_id"):
        raise InvalidDecision("Give either constituent_id or new_constituent, not both")
    return effective


async def _create_decision_constituent(
    db: Session,
    office_id: uuid.UUID,
    message: Message,
    details: dict[str, Any],
    client: LegacyApiClient,
    result: dict[str, Any],
) -> uuid.UUID:
    """Create the sender as a new constituent, with an email contact detail."""
    outcome = await sync_service.create_constituent(
        db,
        office_id,
        client=client,
        first_name=details.get("first_name"),
        last_name=details["last_name"],
        title=details.get("title"),
    )
    result["constituent"] = sync_service.describe_outcome(outcome)
    if isinstance(outcome, sync_service.Rejected):
        raise DecisionRejected(outcome.reason)

    email = details.get("email") or message.from_address
    if email:
        # Queued behind its constituent when that create is queued
        detail = await sync_service.add_contact_detail(
            db, office_id, outcome.entity_id, client=client, contact_type="email", value=email
        )
        result["contact_detail"] = sync_service.describe_outcome(detail)
    message.constituent_id = outcome.entity_id
    db.commit()
    return outcome.entity_id


async def submit_decision(
    db: Session,
    office_id: uuid.UUID,
    message_id: uuid.UUID,
    *,
    decision: str,
    decided_by: str,
    client: LegacyApiClient,
    modifications: dict[str, Any] | None = None,
    reply: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Record a decision on a suggestion and carry it out through the sync engine."""
    message = _get_message(db, office_id, message_id)
    suggestion = _suggestion_for(db, message.id)
    if suggestion is None:
        raise SuggestionNotFound(f"No suggestion for message {message_id}")
    if suggestion.decision != TriageDecision.PENDING.value:
        raise SuggestionLocked("A decision has already been recorded for this message")

    try:
        decision = TriageDecision(decision).value
    except ValueError as exc:
        raise InvalidDecision(f"Unknown decision: {decision}") from exc
    if decision == TriageDecision.PENDING.value:
        raise InvalidDecision("Decision must be accepted, modified or rejected")
    modifications = dict(modifications or {})
    if decision == TriageDecision.MODIFIED.value and not modifications:
        raise InvalidDecision("A modified decision needs modifications")
    if decision != TriageDecision.MODIFIED.value and modifications:
        raise InvalidDecision("Modifications are only allowed on a modified decision")

    log_context = build_log_context(office_id=office_id, entity_type=EntityType.MESSAGE.value)
    result: dict[str, Any] = {"decision": decision}

    if decision != TriageDecision.REJECTED.value:
        effective = _effective_decision(db, office_id, suggestion, modifications)
        action = effective["recommended_action"]
        result["action"] = action
        case: Case | None = None

        if action == RecommendedAction.CREATE_CASE.value:
            constituent_id = effective["constituent_id"] or message.constituent_id
            if effective["new_constituent"]:
                constituent_id = await _create_decision_constituent(
                    db, office_id, message, effective["new_constituent"], client, result
                )
            if constituent_id is None:
                raise InvalidDecision("A constituent is required to create a case")
            outcome = await sync_service.commit(
                db,
                office_id,
                sync_service.EntityChange(
                    EntityType.CASE.value,
                    CREATE,
                    {
                        "constituent_id": constituent_id,
                        "case_type_id": effective["case_type_id"],
                        "status_id": effective["status_id"],
                        "category_type_id": effective["category_type_id"],
                        "assigned_to_id": effective["assignee_id"],
                        "summary": effective["summary"] or message.subject,
                        "priority": effective["priority"],
                        "tags": effective["tags"],
                    },
                ),
                client=client,
            )
            result["case"] = sync_service.describe_outcome(outcome)
            if isinstance(outcome, sync_service.Rejected):
                raise DecisionRejected(outcome.reason)
            case = db.get(Case, outcome.entity_id)
        elif action == RecommendedAction.ADD_TO_EXISTING.value:
            case_id = effective["existing_case_id"]
            case = db.get(Case, case_id) if case_id else None
            if case is None or case.office_id != office_id or case.deleted_at is not None:
                raise InvalidDecision("An existing case is required")
        elif action == RecommendedAction.ASSIGN_CAMPAIGN.value:
            campaign_id = effective["campaign_id"]
            campaign = db.get(Campaign, campaign_id) if campaign_id else None
            if campaign is None or campaign.office_id != office_id:
                raise InvalidDecision("A known campaign is required")
            message.campaign_id = campaign.id
            campaign_service.record_message(db, campaign.id)
        elif action == RecommendedAction.MARK_SPAM.value:
            message.classification = EmailType.SPAM.value

        if case is not None:
            result["case_id"] = str(case.id)
            try:
                result["link"] = await sync_service.link_message_to_case(db, message, case, client=client)
            except (LegacyApiError, sync_service.DependencyPending) as exc:
                logger.warning("Could not link message to case: %s", exc, extra=log_context)
                result["link_error"] = str(exc)

        actioned = await sync_service.mark_message_actioned(db, office_id, message.id, client=client)
        result["actioned"] = sync_service.describe_outcome(actioned)

        if reply and message.from_address:
            outbox = outbox_service.enqueue_email(
                db,
                office_id,
                to=[message.from_address],
                subject=reply.get("subject") or f"Re: {message.subject or ''}".strip(),
                body_html=reply["body_html"],
                related_case_id=case.id if case is not None else None,
                campaign_id=message.campaign_id,
                message_id=message.id,
                commit=False,
            )
            result["outbox_id"] = str(outbox.id)

    # Reload: sync commits above may have expired these instances
    message = _get_message(db, office_id, message_id)
    suggestion = _suggestion_for(db, message.id)
    suggestion.decision = decision
    suggestion.decided_by = decided_by
    suggestion.decided_at = utc_now()
    suggestion.decision_modifications = {
        name: str(value) if isinstance(value, uuid.UUID) else value
        for name, value in modifications.items()
    }
    message.triage_status = TriageStatus.DECIDED.value
    db.commit()
    logger.info("Triage decision recorded: %s", decision, extra=log_context)
    return result
