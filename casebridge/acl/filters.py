"""Search request builders for the legacy ``/search`` endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from casebridge.acl.payloads import LegacyRequest

# Full resync starts here; the legacy system has no records before it
EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def constituents_modified_since(since: datetime | None, page: int, limit: int) -> LegacyRequest:
    return LegacyRequest(
        "POST",
        "/constituents/search",
        {"modifiedAfter": _iso(since or EPOCH), "page": page, "limit": limit},
    )


def cases_modified_since(
    since: datetime | None, until: datetime, page: int, limit: int
) -> LegacyRequest:
    return LegacyRequest(
        "POST",
        "/cases/search",
        {
            "dateRange": {"type": "modified", "from": _iso(since or EPOCH), "to": _iso(until)},
            "pageNo": page,
            "resultsPerPage": limit,
        },
    )


def messages_modified_since(
    since: datetime | None, until: datetime, page: int, limit: int
) -> LegacyRequest:
    return LegacyRequest(
        "POST",
        "/inbox/search",
        {"dateFrom": _iso(since or EPOCH), "dateTo": _iso(until), "page": page, "limit": limit},
    )


def constituent_by_email(email: str) -> LegacyRequest:
    """Natural-key lookup for a constituent by email contact detail."""
    return LegacyRequest(
        "POST", "/constituents/search", {"term": email.strip().lower(), "page": 1, "limit": 5}
    )


def constituents_by_name(first_name: str | None, last_name: str, limit: int = 10) -> LegacyRequest:
    """Natural-key lookup for a constituent with no contact details yet."""
    term = " ".join(part.strip() for part in (first_name, last_name) if part and part.strip())
    return LegacyRequest("POST", "/constituents/search", {"term": term, "page": 1, "limit": limit})


def cases_for_constituent(constituent_external_id: int, page: int = 1, limit: int = 50) -> LegacyRequest:
    return LegacyRequest(
        "POST",
        "/cases/search",
        {"constituentID": constituent_external_id, "pageNo": page, "resultsPerPage": limit},
    )


def modified_since(
    entity_type: str, since: datetime | None, until: datetime, page: int, limit: int
) -> LegacyRequest:
    if entity_type == "constituent":
        return constituents_modified_since(since, page, limit)
    if entity_type == "case":
        return cases_modified_since(since, until, page, limit)
    if entity_type == "message":
        return messages_modified_since(since, until, page, limit)
    raise ValueError(f"No search filter for entity type: {entity_type}")


REFERENCE_ENDPOINTS = {
    "caseworker": "/caseworkers/all",
    "case_type": "/casetype",
    "status_type": "/statustype",
    "category_type": "/categorytype",
    "contact_type": "/contacttype",
    "tag": "/tags",
}
