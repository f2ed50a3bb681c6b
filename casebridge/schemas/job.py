"""Pydantic schemas for background jobs."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class JobStatusRead(BaseModel):
    """Job status, as polled by callers waiting on a result."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    state: str
    attempt_count: int
    max_attempts: int
    cancel_requested: bool
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    next_attempt_at: datetime | None
    output: dict
    error: str | None


class KindCounts(BaseModel):
    pending: int = 0
    active: int = 0


class QueueHealthRead(BaseModel):
    kinds: dict[str, KindCounts]
    last_claimed_at: datetime | None
    overdue: int
    stalled: bool
