"""Legacy response -> canonical entity.

Every function here is pure. Each legacy field is either mapped or named in
the ``_DROPPED`` set for its entity, and anything that cannot be translated
raises ``AdaptationError`` so callers can tell a bad payload from a network
problem. The legacy API has changed key casing and nesting over time with no
version marker, so variants are picked by looking at which keys are present.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Iterable

from casebridge.acl.entities import (
    CanonicalCase,
    CanonicalConstituent,
    CanonicalContactDetail,
    CanonicalMessage,
    CanonicalReference,
    SearchPage,
)
from casebridge.db.enums import MessageDirection, ReferenceType

logger = logging.getLogger(__name__)


class AdaptationError(ValueError):
    """Legacy payload could not be translated."""

    def __init__(self, entity: str, message: str, payload: Any = None):
        super().__init__(f"{entity}: {message}")
        self.entity = entity
        self.payload = payload


# Legacy fields we receive but deliberately do not carry across
_CASE_DROPPED = frozenset({"caseRef", "officeID", "createdBy", "modifiedBy", "deleted"})
_CONSTITUENT_DROPPED = frozenset({"officeID", "dob", "createdBy", "modifiedBy", "deleted"})
_EMAIL_DROPPED = frozenset({"officeID", "textBody", "attachments", "headers", "deleted"})

_INBOUND_TYPES = {"received", "inbox", "inbound", "incoming"}
_OUTBOUND_TYPES = {"sent", "outbox", "outbound", "scheduled"}


def first_present(record: dict, *keys: str, default: Any = None) -> Any:
    """Return the value of the first key present in ``record``."""
    for key in keys:
        if key in record:
            return record[key]
    return default


def parse_int(value: Any, *, entity: str, field_name: str, required: bool = False) -> int | None:
    if value is None or value == "":
        if required:
            raise AdaptationError(entity, f"missing {field_name}")
        return None
    if isinstance(value, bool):
        raise AdaptationError(entity, f"{field_name} is not an id: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise AdaptationError(entity, f"{field_name} is not an id: {value!r}")


def parse_datetime(value: Any, *, entity: str, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise AdaptationError(entity, f"{field_name} is not a timestamp: {value!r}")
    else:
        raise AdaptationError(entity, f"{field_name} is not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: Any, *, entity: str, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            raise AdaptationError(entity, f"{field_name} is not a date: {value!r}")
    raise AdaptationError(entity, f"{field_name} is not a date: {value!r}")


def _address_list(value: Any) -> tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    addresses = []
    for item in value:
        if isinstance(item, dict):
            address = first_present(item, "email", "address")
        else:
            address = item
        if address:
            addresses.append(str(address).strip())
    return tuple(addresses)


def _require_mapping(entity: str, legacy: Any) -> dict:
    if not isinstance(legacy, dict):
        raise AdaptationError(entity, f"expected an object, got {type(legacy).__name__}", legacy)
    return legacy


def _warn_unknown(entity: str, legacy: dict, known: Iterable[str]) -> None:
    unknown = set(legacy) - set(known)
    if unknown:
        logger.debug("Ignoring unknown %s fields: %s", entity, sorted(unknown))


def adapt_contact_detail(legacy: Any, constituent_external_id: int | None = None) -> CanonicalContactDetail:
    legacy = _require_mapping("contact_detail", legacy)
    # Nested form: {id, type, value}; standalone form: {id, contactTypeID, value, constituentID}
    contact_type = first_present(legacy, "type", "contactType", default=None)
    contact_type_id = parse_int(
        first_present(legacy, "contactTypeID", "contacttypeID"),
        entity="contact_detail",
        field_name="contactTypeID",
    )
    value = first_present(legacy, "value", "detail")
    if value is None or str(value).strip() == "":
        raise AdaptationError("contact_detail", "missing value", legacy)
    if contact_type is None:
        contact_type = "email" if "@" in str(value) else "other"
    return CanonicalContactDetail(
        external_id=parse_int(legacy.get("id"), entity="contact_detail", field_name="id"),
        contact_type=str(contact_type).lower(),
        contact_type_id=contact_type_id,
        value=str(value).strip(),
        constituent_external_id=parse_int(
            first_present(legacy, "constituentID", "constituentId", default=constituent_external_id),
            entity="contact_detail",
            field_name="constituentID",
        ),
    )


def adapt_constituent(legacy: Any) -> CanonicalConstituent:
    legacy = _require_mapping("constituent", legacy)
    external_id = parse_int(legacy.get("id"), entity="constituent", field_name="id", required=True)

    if "contactDetails" in legacy:
        details = tuple(
            adapt_contact_detail(item, external_id) for item in legacy.get("contactDetails") or []
        )
    else:
        # Older flat shape carries a single email/phone pair
        flat = []
        if legacy.get("email"):
            flat.append(CanonicalContactDetail(None, "email", str(legacy["email"]).strip(), None, external_id))
        if legacy.get("phone"):
            flat.append(CanonicalContactDetail(None, "phone", str(legacy["phone"]).strip(), None, external_id))
        details = tuple(flat)

    geocode = legacy.get("geocode") if isinstance(legacy.get("geocode"), dict) else {}
    lat = first_present(legacy, "geocodeLat", default=geocode.get("lat"))
    lng = first_present(legacy, "geocodeLng", default=geocode.get("lng"))

    _warn_unknown(
        "constituent",
        legacy,
        {
            "id", "firstName", "firstname", "lastName", "surname", "title",
            "organisationType", "geocodeLat", "geocodeLng", "geocode",
            "contactDetails", "email", "phone", "createdAt", "updatedAt",
            "modifiedAt",
        }
        | _CONSTITUENT_DROPPED,
    )
    return CanonicalConstituent(
        external_id=external_id,
        first_name=first_present(legacy, "firstName", "firstname"),
        last_name=first_present(legacy, "lastName", "surname"),
        title=legacy.get("title"),
        organisation_type=legacy.get("organisationType"),
        geocode_lat=float(lat) if lat not in (None, "") else None,
        geocode_lng=float(lng) if lng not in (None, "") else None,
        contact_details=details,
        created_at=parse_datetime(legacy.get("createdAt"), entity="constituent", field_name="createdAt"),
        updated_at=parse_datetime(
            first_present(legacy, "updatedAt", "modifiedAt"), entity="constituent", field_name="updatedAt"
        ),
    )


def adapt_case(legacy: Any) -> CanonicalCase:
    legacy = _require_mapping("case", legacy)

    def ref(*keys: str) -> int | None:
        return parse_int(first_present(legacy, *keys), entity="case", field_name=keys[0])

    # Some responses nest the constituent instead of giving its id
    constituent = legacy.get("constituent")
    if isinstance(constituent, dict):
        constituent_id = parse_int(constituent.get("id"), entity="case", field_name="constituent.id")
    else:
        constituent_id = ref("constituentID", "constituentId")

    _warn_unknown(
        "case",
        legacy,
        {
            "id", "constituentID", "constituentId", "constituent", "caseTypeID",
            "casetypeID", "statusID", "categoryTypeID", "categorytypeID",
            "contactTypeID", "contacttypeID", "assignedToID", "summary",
            "reviewDate", "createdAt", "updatedAt", "modifiedAt",
        }
        | _CASE_DROPPED,
    )
    return CanonicalCase(
        external_id=parse_int(legacy.get("id"), entity="case", field_name="id", required=True),
        constituent_external_id=constituent_id,
        case_type_id=ref("caseTypeID", "casetypeID"),
        status_id=ref("statusID"),
        category_type_id=ref("categoryTypeID", "categorytypeID"),
        contact_type_id=ref("contactTypeID", "contacttypeID"),
        assigned_to_id=ref("assignedToID"),
        summary=legacy.get("summary"),
        review_date=parse_date(legacy.get("reviewDate"), entity="case", field_name="reviewDate"),
        created_at=parse_datetime(legacy.get("createdAt"), entity="case", field_name="createdAt"),
        updated_at=parse_datetime(
            first_present(legacy, "updatedAt", "modifiedAt"), entity="case", field_name="updatedAt"
        ),
    )


def _direction(email_type: Any) -> str:
    value = str(email_type or "").lower()
    if value in _INBOUND_TYPES:
        return MessageDirection.INBOUND.value
    if value == "draft":
        return MessageDirection.DRAFT.value
    if value in _OUTBOUND_TYPES:
        return MessageDirection.OUTBOUND.value
    return MessageDirection.INBOUND.value


def adapt_message(legacy: Any) -> CanonicalMessage:
    legacy = _require_mapping("message", legacy)

    def ts(*keys: str) -> datetime | None:
        return parse_datetime(first_present(legacy, *keys), entity="message", field_name=keys[0])

    sender = first_present(legacy, "from", "fromAddress")
    if isinstance(sender, dict):
        sender = sender.get("email")

    received_at = ts("receivedAt", "dateReceived")
    sent_at = ts("sentAt")
    updated_at = ts("updatedAt", "modifiedAt") or received_at or sent_at

    _warn_unknown(
        "message",
        legacy,
        {
            "id", "caseID", "caseId", "constituentID", "constituentId", "type",
            "subject", "htmlBody", "body", "from", "fromAddress", "to", "cc",
            "bcc", "actioned", "assignedToID", "scheduledAt", "sentAt",
            "receivedAt", "dateReceived", "updatedAt", "modifiedAt",
        }
        | _EMAIL_DROPPED,
    )
    return CanonicalMessage(
        external_id=parse_int(legacy.get("id"), entity="message", field_name="id", required=True),
        direction=_direction(legacy.get("type")),
        subject=legacy.get("subject"),
        html_body=first_present(legacy, "htmlBody", "body"),
        from_address=str(sender).strip() if sender else None,
        to_addresses=_address_list(legacy.get("to")),
        cc_addresses=_address_list(legacy.get("cc")),
        bcc_addresses=_address_list(legacy.get("bcc")),
        case_external_id=parse_int(
            first_present(legacy, "caseID", "caseId"), entity="message", field_name="caseID"
        ),
        constituent_external_id=parse_int(
            first_present(legacy, "constituentID", "constituentId"),
            entity="message",
            field_name="constituentID",
        ),
        actioned=bool(legacy.get("actioned", False)),
        assigned_to_id=parse_int(legacy.get("assignedToID"), entity="message", field_name="assignedToID"),
        scheduled_at=ts("scheduledAt"),
        sent_at=sent_at,
        received_at=received_at,
        updated_at=updated_at,
    )


# ref_type -> keys that may hold the display name, most specific first
_REFERENCE_NAME_KEYS = {
    ReferenceType.CASE_TYPE.value: ("casetype", "caseType", "name"),
    ReferenceType.STATUS_TYPE.value: ("statustype", "statusType", "name"),
    ReferenceType.CATEGORY_TYPE.value: ("categorytype", "categoryType", "name"),
    ReferenceType.CONTACT_TYPE.value: ("contacttype", "contactType", "name"),
    ReferenceType.CASEWORKER.value: ("name", "fullName"),
    ReferenceType.TAG.value: ("tag", "name"),
}


def adapt_reference(ref_type: str, legacy: Any) -> CanonicalReference:
    legacy = _require_mapping(ref_type, legacy)
    if ref_type not in _REFERENCE_NAME_KEYS:
        raise AdaptationError(ref_type, "unknown reference type")
    name = first_present(legacy, *_REFERENCE_NAME_KEYS[ref_type])
    if not name:
        raise AdaptationError(ref_type, "missing name", legacy)
    active = first_present(legacy, "is_active", "isActive", "active", default=True)
    closed = first_present(legacy, "closed", "isClosed", "is_closed", default=False)
    return CanonicalReference(
        ref_type=ref_type,
        external_id=parse_int(legacy.get("id"), entity=ref_type, field_name="id", required=True),
        name=str(name).strip(),
        is_active=bool(active),
        is_closed=bool(closed),
    )


def adapt_search_page(response: Any, *, page: int, limit: int) -> SearchPage:
    """Unwrap a ``/search`` envelope (``results`` or ``data``) or a bare list."""
    if isinstance(response, list):
        return SearchPage(records=tuple(response), total=None, page=page, limit=limit)
    response = _require_mapping("search", response)
    records = first_present(response, "results", "data", "items")
    if records is None or not isinstance(records, list):
        raise AdaptationError("search", "response has no result list", response)
    total = response.get("total")
    return SearchPage(
        records=tuple(records),
        total=int(total) if total is not None else None,
        page=int(response.get("page") or response.get("pageNo") or page),
        limit=int(response.get("limit") or response.get("resultsPerPage") or limit),
    )


def adapt_created_id(entity: str, response: Any) -> int:
    """Pull the legacy id out of a create response (full record or ``{id}``)."""
    if isinstance(response, (int, str)) and not isinstance(response, bool):
        return parse_int(response, entity=entity, field_name="id", required=True)
    response = _require_mapping(entity, response)
    return parse_int(
        first_present(response, "id", "ID", "insertId"), entity=entity, field_name="id", required=True
    )


ADAPTERS = {
    "constituent": adapt_constituent,
    "case": adapt_case,
    "message": adapt_message,
}


def adapt(entity_type: str, legacy: Any):
    try:
        adapter = ADAPTERS[entity_type]
    except KeyError:
        raise AdaptationError(entity_type, "no adapter registered")
    return adapter(legacy)
