"""Anti-corruption layer: the only code that knows legacy field names."""

from casebridge.acl.adapters import (
    AdaptationError,
    adapt,
    adapt_case,
    adapt_constituent,
    adapt_contact_detail,
    adapt_created_id,
    adapt_message,
    adapt_reference,
    adapt_search_page,
)
from casebridge.acl.entities import (
    CanonicalCase,
    CanonicalConstituent,
    CanonicalContactDetail,
    CanonicalMessage,
    CanonicalReference,
    SearchPage,
)
from casebridge.acl.payloads import (
    CREATE,
    DELETE,
    UPDATE,
    LegacyRequest,
    case_note_payload,
    draft_email_payload,
    entity_path,
    legacy_owned_fields,
    matches_legacy,
    to_legacy_body,
    to_legacy_payload,
)

__all__ = [
    "AdaptationError",
    "CREATE",
    "CanonicalCase",
    "CanonicalConstituent",
    "CanonicalContactDetail",
    "CanonicalMessage",
    "CanonicalReference",
    "DELETE",
    "LegacyRequest",
    "SearchPage",
    "UPDATE",
    "adapt",
    "adapt_case",
    "adapt_constituent",
    "adapt_contact_detail",
    "adapt_created_id",
    "adapt_message",
    "adapt_reference",
    "adapt_search_page",
    "case_note_payload",
    "draft_email_payload",
    "entity_path",
    "legacy_owned_fields",
    "matches_legacy",
    "to_legacy_body",
    "to_legacy_payload",
]
