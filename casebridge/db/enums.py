"""Enums shared by models, services and schemas."""

from enum import Enum


class EntityType(str, Enum):
    CONSTITUENT = "constituent"
    CONTACT_DETAIL = "contact_detail"
    CASE = "case"
    MESSAGE = "message"


# Entity types pulled by the reconciliation poller, in dependency order
POLLED_ENTITY_TYPES = (EntityType.CONSTITUENT, EntityType.CASE, EntityType.MESSAGE)


class ReferenceType(str, Enum):
    CASE_TYPE = "case_type"
    STATUS_TYPE = "status_type"
    CATEGORY_TYPE = "category_type"
    CONTACT_TYPE = "contact_type"
    CASEWORKER = "caseworker"
    TAG = "tag"


class JobKind(str, Enum):
    TRIAGE_PROCESS = "triage_process"
    EMAIL_DELIVER = "email_deliver"
    SYNC_PUSH = "sync_push"
    QUEUE_PURGE = "queue_purge"


class JobState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    DRAFT = "draft"


class TriageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUGGESTED = "suggested"
    DECIDED = "decided"
    NEEDS_MANUAL_TRIAGE = "needs_manual_triage"


class EmailType(str, Enum):
    CASEWORK = "casework"
    POLICY = "policy"
    CAMPAIGN = "campaign"
    SPAM = "spam"
    PERSONAL = "personal"
    OTHER = "other"


class RecommendedAction(str, Enum):
    CREATE_CASE = "create_case"
    ADD_TO_EXISTING = "add_to_existing"
    ASSIGN_CAMPAIGN = "assign_campaign"
    MARK_SPAM = "mark_spam"
    IGNORE = "ignore"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TriageDecision(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    MODIFIED = "modified"
    REJECTED = "rejected"


class ConflictResolution(str, Enum):
    LEGACY_WINS = "legacy_wins"
    LOCAL_WINS = "local_wins"
    MERGED = "merged"
