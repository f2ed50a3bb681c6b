"""Canonical shapes produced by the adapters.

Fields the legacy system never supplies are not here; they live only on the
shadow rows (see ``casebridge.db.models.mirror``) and are enriched locally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime


@dataclass(frozen=True)
class CanonicalContactDetail:
    external_id: int | None
    contact_type: str
    value: str
    contact_type_id: int | None = None
    constituent_external_id: int | None = None


@dataclass(frozen=True)
class CanonicalConstituent:
    external_id: int
    first_name: str | None
    last_name: str | None
    title: str | None = None
    organisation_type: str | None = None
    geocode_lat: float | None = None
    geocode_lng: float | None = None
    contact_details: tuple[CanonicalContactDetail, ...] = field(default_factory=tuple)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CanonicalCase:
    external_id: int
    constituent_external_id: int | None
    case_type_id: int | None = None
    status_id: int | None = None
    category_type_id: int | None = None
    contact_type_id: int | None = None
    assigned_to_id: int | None = None
    summary: str | None = None
    review_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CanonicalMessage:
    external_id: int
    direction: str
    subject: str | None = None
    html_body: str | None = None
    from_address: str | None = None
    to_addresses: tuple[str, ...] = ()
    cc_addresses: tuple[str, ...] = ()
    bcc_addresses: tuple[str, ...] = ()
    case_external_id: int | None = None
    constituent_external_id: int | None = None
    actioned: bool = False
    assigned_to_id: int | None = None
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    received_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CanonicalReference:
    ref_type: str
    external_id: int
    name: str
    is_active: bool = True
    is_closed: bool = False


@dataclass(frozen=True)
class SearchPage:
    """One page of a legacy ``/search`` response."""

    records: tuple[dict, ...]
    total: int | None
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return len(self.records) >= self.limit
