"""FastAPI dependencies: database session, API key and office scoping."""

from __future__ import annotations

import hmac
from typing import Generator
from uuid import UUID

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from casebridge.core.config import settings
from casebridge.db.models import Office
from casebridge.db.session import SessionLocal
from casebridge.services import legacy_client


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Check ``X-API-Key`` when an API key is configured."""
    if not settings.API_KEY:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_office(
    x_office_id: UUID | None = Header(default=None),
    db: Session = Depends(get_db),
    _: None = Depends(require_api_key),
) -> Office:
    """Office named by the ``X-Office-ID`` header."""
    if x_office_id is None:
        raise HTTPException(status_code=400, detail="X-Office-ID header is required")
    office = db.get(Office, x_office_id)
    if office is None:
        raise HTTPException(status_code=404, detail="Office not found")
    return office


async def get_legacy_client(
    office: Office = Depends(get_office),
    db: Session = Depends(get_db),
):
    """Legacy API client for the request's office, closed after the response."""
    try:
        client = legacy_client.build_client(db, office.id)
    except legacy_client.AuthError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    try:
        yield client
    finally:
        await client.aclose()
