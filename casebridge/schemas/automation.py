"""Pydantic schemas for the automation session endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class SessionStart(BaseModel):
    holder_id: str = Field(min_length=1, max_length=200)
    ttl_seconds: int | None = Field(default=None, gt=0, le=3600)


class SessionAction(BaseModel):
    holder_id: str = Field(min_length=1, max_length=200)
    ttl_seconds: int | None = Field(default=None, gt=0, le=3600)


class LeaseRead(BaseModel):
    resource: str
    locked: bool
    holder_id: str | None
    office_id: str | None
    expires_at: datetime | None
    session_handle: str | None


class SessionRead(BaseModel):
    holder_id: str
    expires_at: datetime
    session_handle: str | None = None
    detail: dict = Field(default_factory=dict)
