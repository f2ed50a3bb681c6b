"""SQLAlchemy ORM models."""

from casebridge.db.models.automation import MAIL_AUTOMATION_RESOURCE, AutomationLease
from casebridge.db.models.jobs import Job, OutboxMessage
from casebridge.db.models.mirror import (
    Case,
    Constituent,
    ContactDetail,
    Message,
    MirroredMixin,
    ReferenceItem,
)
from casebridge.db.models.offices import LegacyCredential, Office
from casebridge.db.models.sync import SyncConflictLog, SyncWatermark
from casebridge.db.models.triage import Campaign, TriageSuggestion

__all__ = [
    "AutomationLease",
    "Campaign",
    "Case",
    "Constituent",
    "ContactDetail",
    "Job",
    "LegacyCredential",
    "MAIL_AUTOMATION_RESOURCE",
    "Message",
    "MirroredMixin",
    "Office",
    "OutboxMessage",
    "ReferenceItem",
    "SyncConflictLog",
    "SyncWatermark",
    "TriageSuggestion",
]
