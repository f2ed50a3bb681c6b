"""Campaigns and triage suggestions."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from casebridge.db.base import Base
from casebridge.db.enums import TriageDecision
from casebridge.db.types import JSONType, utc_now


class Campaign(Base):
    """A known mass-mail campaign that inbound messages can be matched to."""

    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject_pattern: Mapped[str | None] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


class TriageSuggestion(Base):
    """
    Validated classifier output for one message.

    Derived, never authoritative. Frozen once ``decision`` leaves pending.
    """

    __tablename__ = "triage_suggestions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offices.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    email_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email_type_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    recommended_action: Mapped[str] = mapped_column(String(30), nullable=False)
    action_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    suggested_case_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    suggested_status_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    suggested_category_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    suggested_assignee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    suggested_priority: Mapped[str | None] = mapped_column(String(20), nullable=True)
    suggested_tags: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    suggested_case_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)

    matched_constituent_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    matched_case_ids: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    matched_campaign_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    campaign_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    context_snapshot: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    raw_response: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    classifier_name: Mapped[str] = mapped_column(String(50), nullable=False)
    dropped_ids: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    decision: Mapped[str] = mapped_column(
        String(20), default=TriageDecision.PENDING.value, nullable=False
    )
    decided_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decision_modifications: Mapped[dict] = mapped_column(
        JSONType, default=dict, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
