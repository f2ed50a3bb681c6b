"""Pydantic schemas for triage suggestions and decisions."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from casebridge.db.enums import TriageDecision


class TriageRequest(BaseModel):
    force: bool = False


class TriageQueued(BaseModel):
    job_id: UUID
    state: str


class SuggestionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    message_id: UUID
    job_id: UUID | None
    email_type: str | None
    email_type_confidence: float | None
    recommended_action: str
    action_confidence: float | None
    suggested_case_type_id: int | None
    suggested_status_id: int | None
    suggested_category_type_id: int | None
    suggested_assignee_id: int | None
    suggested_priority: str | None
    suggested_tags: list[int]
    suggested_case_id: UUID | None
    summary: str | None
    reasoning: str | None
    matched_constituent_id: UUID | None
    matched_case_ids: list[str]
    matched_campaign_id: UUID | None
    campaign_confidence: float | None
    classifier_name: str
    dropped_ids: dict
    decision: str
    decided_by: str | None
    decided_at: datetime | None
    decision_modifications: dict
    created_at: datetime


class ReplyDraft(BaseModel):
    subject: str | None = None
    body_html: str = Field(min_length=1)


class NewConstituent(BaseModel):
    """Constituent created inline by a create_case decision."""

    first_name: str | None = None
    last_name: str = Field(min_length=1)
    title: str | None = None
    email: str | None = None


class DecisionSubmit(BaseModel):
    decision: TriageDecision
    decided_by: str = Field(min_length=1, max_length=200)
    modifications: dict[str, Any] = Field(default_factory=dict)
    reply: ReplyDraft | None = None


class DecisionResult(BaseModel):
    decision: str
    action: str | None = None
    case_id: str | None = None
    case: dict | None = None
    actioned: dict | None = None
    outbox_id: str | None = None
    constituent: dict | None = None
    contact_detail: dict | None = None
    link: str | None = None
    link_error: str | None = None
