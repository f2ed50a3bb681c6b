"""Office and legacy credential models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Float, ForeignKey, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from casebridge.db.base import Base
from casebridge.db.types import EncryptedString, utc_now


class Office(Base):
    """A constituency office; every mirrored row belongs to exactly one."""

    __tablename__ = "offices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Legacy host is https://{subdomain}.farier.com
    subdomain: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    autonomous_triage: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    autonomy_threshold: Mapped[float] = mapped_column(
        Float, default=0.9, server_default=text("0.9"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    credential: Mapped["LegacyCredential | None"] = relationship(
        back_populates="office", uselist=False, cascade="all, delete-orphan"
    )


class LegacyCredential(Base):
    """Login for the legacy API, encrypted at rest."""

    __tablename__ = "legacy_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offices.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    email: Mapped[str] = mapped_column(EncryptedString, nullable=False)
    password: Mapped[str] = mapped_column(EncryptedString, nullable=False)
    # Overrides LEGACY_BASE_URL_TEMPLATE when set
    api_base_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    office: Mapped[Office] = relationship(back_populates="credential")
