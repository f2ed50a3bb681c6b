"""Automation lease model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from casebridge.db.base import Base

MAIL_AUTOMATION_RESOURCE = "mail_automation"


class AutomationLease(Base):
    """
    Exclusive hold on the shared browser-automation session.

    One row per resource. A holder that stops renewing before ``expires_at``
    is treated as gone and the row becomes claimable again.
    """

    __tablename__ = "automation_leases"

    resource: Mapped[str] = mapped_column(String(50), primary_key=True)
    locked: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    locked_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    locked_by_office_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    session_handle: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
