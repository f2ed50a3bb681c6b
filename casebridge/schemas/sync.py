"""Pydantic schemas for sync endpoints."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from casebridge.db.enums import EntityType


class PollRequest(BaseModel):
    entity_types: list[EntityType] | None = None
    full: bool = False


class PollCancelRequest(BaseModel):
    entity_type: EntityType


class PollCancelRead(BaseModel):
    entity_type: str
    cancel_requested: bool


class PollResultRead(BaseModel):
    entity_type: str
    pages: int
    seen: int
    upserted: int
    created: int
    conflicts: int
    invalid: int
    skipped: bool
    cancelled: bool = False
    watermark: datetime | None
    triage_jobs: list[UUID]


class ConstituentCreate(BaseModel):
    first_name: str | None = None
    last_name: str = Field(min_length=1)
    title: str | None = None
    organisation_type: str | None = None
    email: str | None = None


class ConstituentUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    organisation_type: str | None = None
    notes: str | None = None


class CaseCreate(BaseModel):
    constituent_id: UUID
    case_type_id: int | None = None
    status_id: int | None = None
    category_type_id: int | None = None
    contact_type_id: int | None = None
    assigned_to_id: int | None = None
    summary: str | None = None
    review_date: date | None = None
    priority: str | None = None
    tags: list[int] = Field(default_factory=list)


class CaseUpdate(BaseModel):
    case_type_id: int | None = None
    status_id: int | None = None
    category_type_id: int | None = None
    contact_type_id: int | None = None
    assigned_to_id: int | None = None
    summary: str | None = None
    review_date: date | None = None
    priority: str | None = None
    tags: list[int] | None = None


class SyncOutcomeRead(BaseModel):
    status: str
    entity_id: str | None = None
    external_id: int | None = None
    job_id: str | None = None
    reason: str | None = None
    contact_detail: "SyncOutcomeRead | None" = None
