"""Shadow copies of legacy entities.

Each mirrored row carries its legacy mapping inline: ``external_id`` is the
legacy id (``None`` while a locally created row waits for its first legacy
write), ``last_synced_at`` never moves backwards, and ``legacy_updated_at``
is the last legacy version the row has seen.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from casebridge.db.base import Base
from casebridge.db.enums import MessageDirection, TriageStatus
from casebridge.db.types import JSONType, utc_now


class MirroredMixin:
    """Columns shared by every table mirrored from the legacy system."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    legacy_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    local_modified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    pending_sync: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Canonical field names with local edits not yet acknowledged by legacy
    pending_fields: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    @declared_attr
    def office_id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            Uuid, ForeignKey("offices.id", ondelete="CASCADE"), nullable=False, index=True
        )

    @declared_attr.directive
    def __mapper_args__(cls):
        return {"version_id_col": cls.__table__.c.version}


def _external_id_unique(table: str) -> UniqueConstraint:
    return UniqueConstraint("office_id", "external_id", name=f"uq_{table}_office_external")


class Constituent(MirroredMixin, Base):
    __tablename__ = "constituents"
    __table_args__ = (_external_id_unique("constituents"),)

    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    title: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organisation_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    geocode_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    geocode_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Shadow-only enrichment
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    contact_details: Mapped[list["ContactDetail"]] = relationship(
        back_populates="constituent", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or "Unknown"


class ContactDetail(MirroredMixin, Base):
    __tablename__ = "contact_details"
    __table_args__ = (
        _external_id_unique("contact_details"),
        # Sender lookup relies on this: one owner per address per office
        UniqueConstraint(
            "office_id", "contact_type", "normalized_value", name="uq_contact_details_value"
        ),
    )

    constituent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("constituents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    contact_type: Mapped[str] = mapped_column(String(30), nullable=False)
    contact_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_value: Mapped[str] = mapped_column(Text, nullable=False)

    constituent: Mapped[Constituent] = relationship(back_populates="contact_details")


class Case(MirroredMixin, Base):
    __tablename__ = "cases"
    __table_args__ = (
        _external_id_unique("cases"),
        Index("idx_cases_constituent_activity", "constituent_id", "legacy_updated_at"),
    )

    constituent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("constituents.id", ondelete="SET NULL"), nullable=True
    )
    # Legacy reference-data ids
    case_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contact_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_to_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    legacy_created_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Shadow-only enrichment
    priority: Mapped[str | None] = mapped_column(String(20), nullable=True)
    tags: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    ai_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    constituent: Mapped[Constituent | None] = relationship()


class Message(MirroredMixin, Base):
    __tablename__ = "messages"
    __table_args__ = (
        _external_id_unique("messages"),
        Index("idx_messages_triage", "office_id", "triage_status"),
    )

    case_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("cases.id", ondelete="SET NULL"), nullable=True
    )
    constituent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("constituents.id", ondelete="SET NULL"), nullable=True
    )
    direction: Mapped[str] = mapped_column(
        String(20), default=MessageDirection.INBOUND.value, nullable=False
    )
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    html_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    to_addresses: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    cc_addresses: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    bcc_addresses: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    actioned: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    assigned_to_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Shadow-only enrichment
    triage_status: Mapped[str] = mapped_column(
        String(30), default=TriageStatus.PENDING.value, nullable=False
    )
    classification: Mapped[str | None] = mapped_column(String(30), nullable=True)
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True
    )


class ReferenceItem(Base):
    """Office reference data (case types, statuses, caseworkers, ...)."""

    __tablename__ = "reference_items"
    __table_args__ = (
        UniqueConstraint("office_id", "ref_type", "external_id", name="uq_reference_items"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offices.id", ondelete="CASCADE"), nullable=False
    )
    ref_type: Mapped[str] = mapped_column(String(30), nullable=False)
    external_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Only meaningful for status types
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
