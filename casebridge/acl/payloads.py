"""Canonical change -> legacy request.

A change is a plain dict of canonical field names to new values; these
functions pick the legacy endpoint and body for it. Like the adapters they do
no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from casebridge.acl.adapters import AdaptationError

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class LegacyRequest:
    method: str
    path: str
    body: dict | None = None


# canonical field -> legacy field
CASE_FIELDS = {
    "constituent_external_id": "constituentID",
    "case_type_id": "caseTypeID",
    "status_id": "statusID",
    "category_type_id": "categoryTypeID",
    "contact_type_id": "contactTypeID",
    "assigned_to_id": "assignedToID",
    "summary": "summary",
    "review_date": "reviewDate",
}
CONSTITUENT_FIELDS = {
    "first_name": "firstName",
    "last_name": "lastName",
    "title": "title",
    "organisation_type": "organisationType",
}
MESSAGE_FIELDS = {
    "actioned": "actioned",
    "assigned_to_id": "assignedToID",
    "scheduled_at": "scheduledAt",
}
CONTACT_DETAIL_FIELDS = {
    "constituent_external_id": "constituentID",
    "contact_type_id": "contactTypeID",
    "value": "value",
}

# Fields the legacy system accepts per entity; anything else is shadow-only
LEGACY_FIELDS = {
    "case": CASE_FIELDS,
    "constituent": CONSTITUENT_FIELDS,
    "message": MESSAGE_FIELDS,
    "contact_detail": CONTACT_DETAIL_FIELDS,
}

_REQUIRED_ON_CREATE = {
    "case": ("constituent_external_id",),
    "constituent": ("last_name",),
    "contact_detail": ("constituent_external_id", "contact_type_id", "value"),
}


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    return value


def legacy_owned_fields(entity_type: str) -> frozenset[str]:
    return frozenset(LEGACY_FIELDS.get(entity_type, {}))


def to_legacy_body(entity_type: str, changes: dict[str, Any], operation: str) -> dict:
    """Translate a canonical change dict to the legacy request body.

    Shadow-only fields are dropped. On create, ``None`` values are omitted;
    on update they are sent so a field can be cleared.
    """
    try:
        mapping = LEGACY_FIELDS[entity_type]
    except KeyError:
        raise AdaptationError(entity_type, "entity cannot be written to legacy")

    if operation == CREATE:
        missing = [f for f in _REQUIRED_ON_CREATE.get(entity_type, ()) if changes.get(f) in (None, "")]
        if missing:
            raise AdaptationError(entity_type, f"missing required fields: {', '.join(missing)}")

    body: dict[str, Any] = {}
    for canonical, legacy in mapping.items():
        if canonical not in changes:
            continue
        value = changes[canonical]
        if value is None and operation == CREATE:
            continue
        body[legacy] = _serialize(value)
    if entity_type == "contact_detail" and operation == CREATE:
        body.setdefault("source", changes.get("source") or "casebridge")
    return body


def to_legacy_payload(
    entity_type: str,
    changes: dict[str, Any],
    operation: str,
    external_id: int | None = None,
) -> LegacyRequest:
    """Build the full legacy request (method, path, body) for a change."""
    body = to_legacy_body(entity_type, changes, operation)
    collection = _COLLECTIONS.get(entity_type)
    if collection is None:
        raise AdaptationError(entity_type, "entity cannot be written to legacy")

    if operation == CREATE:
        if entity_type == "message":
            raise AdaptationError(entity_type, "use draft_email_payload to create messages")
        return LegacyRequest("POST", f"/{collection}", body)
    if external_id is None:
        raise AdaptationError(entity_type, f"{operation} needs an external id")
    if operation == UPDATE:
        if not body:
            raise AdaptationError(entity_type, "update has no legacy-owned fields")
        return LegacyRequest("PATCH", f"/{collection}/{external_id}", body)
    if operation == DELETE:
        return LegacyRequest("DELETE", f"/{collection}/{external_id}", None)
    raise AdaptationError(entity_type, f"unknown operation {operation!r}")


_COLLECTIONS = {
    "case": "cases",
    "constituent": "constituents",
    "message": "emails",
    "contact_detail": "contactDetails",
}


def entity_path(entity_type: str, external_id: int) -> str:
    """GET path for one legacy record, used for read-reconciliation."""
    try:
        return f"/{_COLLECTIONS[entity_type]}/{external_id}"
    except KeyError:
        raise AdaptationError(entity_type, "entity has no legacy path")


def draft_email_payload(
    *,
    to: list[str],
    subject: str,
    html_body: str,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    case_external_id: int | None = None,
) -> LegacyRequest:
    if not to:
        raise AdaptationError("message", "draft needs at least one recipient")
    body: dict[str, Any] = {
        "type": "draft",
        "to": list(to),
        "subject": subject,
        "htmlBody": html_body,
    }
    if cc:
        body["cc"] = list(cc)
    if bcc:
        body["bcc"] = list(bcc)
    if case_external_id is not None:
        body["caseID"] = case_external_id
    return LegacyRequest("POST", "/emails", body)


def case_note_payload(
    case_external_id: int,
    *,
    note_type: str = "note",
    content: str | None = None,
    email_external_id: int | None = None,
) -> LegacyRequest:
    body: dict[str, Any] = {"type": note_type}
    if content is not None:
        body["content"] = content
    if email_external_id is not None:
        # A note of type "email" links the email to the case
        body["type"] = "email"
        body["emailId"] = email_external_id
    return LegacyRequest("POST", f"/cases/{case_external_id}/notes", body)


# Some legacy endpoints spell reference ids in lower case
_LOWERCASE_ID_KEYS = {
    "caseTypeID": "casetypeID",
    "categoryTypeID": "categorytypeID",
    "contactTypeID": "contacttypeID",
}


def matches_legacy(entity_type: str, changes: dict[str, Any], legacy_record: dict) -> bool:
    """True when every legacy-owned field in ``changes`` already holds the
    requested value in ``legacy_record``. Used to decide whether an ambiguous
    write actually landed."""
    body = to_legacy_body(entity_type, changes, UPDATE)
    if not body:
        return False
    for legacy_key, expected in body.items():
        if legacy_key in legacy_record:
            actual = legacy_record[legacy_key]
        else:
            actual = legacy_record.get(_LOWERCASE_ID_KEYS.get(legacy_key, legacy_key))
        if isinstance(expected, str) and isinstance(actual, str):
            if legacy_key == "reviewDate":
                if actual[:10] != expected[:10]:
                    return False
                continue
            if expected.strip() != actual.strip():
                return False
        elif expected != actual:
            if expected is not None and actual is not None and str(expected) == str(actual):
                continue
            return False
    return True
