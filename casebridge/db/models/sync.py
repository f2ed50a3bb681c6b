"""Reconciliation bookkeeping."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from casebridge.db.base import Base
from casebridge.db.types import JSONType, utc_now


class SyncWatermark(Base):
    """
    Last ingested legacy change per office and entity type.

    ``running_until`` doubles as a poll lease so two pollers (in different
    processes) never run the same pair at once.
    ``cancel_requested`` stops a running poll at its next page boundary.
    """

    __tablename__ = "sync_watermarks"
    __table_args__ = (
        UniqueConstraint("office_id", "entity_type", name="uq_sync_watermarks"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offices.id", ondelete="CASCADE"), nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    watermark: Mapped[datetime | None] = mapped_column(nullable=True)
    cursor: Mapped[str | None] = mapped_column(String(200), nullable=True)
    running_until: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    last_poll_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_poll_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    records_seen: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_upserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conflicts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class SyncConflictLog(Base):
    """A field-level merge performed while ingesting a legacy change."""

    __tablename__ = "sync_conflict_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    internal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fields: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    resolution: Mapped[str] = mapped_column(String(20), nullable=False)
    legacy_values: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    local_values: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
