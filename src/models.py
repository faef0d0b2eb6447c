"""Data models for the alerting engine."""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.attributes import set_committed_value

# SQLAlchemy base
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    """Organizational roles used to resolve recipient bands."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    VIEWER = "VIEWER"


class DeliveryFrequency(str, enum.Enum):
    """Per-user delivery preference for a notification type."""

    IMMEDIATE = "IMMEDIATE"
    DAILY_DIGEST = "DAILY_DIGEST"
    WEEKLY_DIGEST = "WEEKLY_DIGEST"
    DISABLED = "DISABLED"


class DeadlineStatus(str, enum.Enum):
    """Lifecycle of a compliance deadline."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class EvidenceStatus(str, enum.Enum):
    """Lifecycle of an evidence item."""

    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class ReviewStatus(str, enum.Enum):
    """Lifecycle of a human review queue item."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class NotificationStatus(str, enum.Enum):
    """Delivery lifecycle of a notification row."""

    PENDING = "PENDING"
    QUEUED = "QUEUED"
    SENT = "SENT"
    RETRYING = "RETRYING"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class NotificationPriority(enum.IntEnum):
    """Ordered notification priority; higher values deliver first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4


class DigestType(str, enum.Enum):
    """Digest cadence for deferred notifications."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


class JobRunStatus(str, enum.Enum):
    """Status of a periodic job run."""

    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(enum_cls, name=name, native_enum=False, length=32)


# Record store collaborator tables


class Company(Base):
    """Company that owns sites, users, and obligations."""

    __tablename__ = "companies"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)


class Site(Base):
    """Operational site within a company."""

    __tablename__ = "sites"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    name = Column(String(200), nullable=False)


class User(Base):
    """Directory entry for a notification recipient.

    A null site_id marks a company-level user.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=True)
    email = Column(String(320), nullable=True)
    full_name = Column(String(200), nullable=True)
    role = Column(_enum_column(UserRole, "user_role"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class NotificationPreference(Base):
    """Delivery preference for a user; '*' applies to every notification type."""

    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    notification_type = Column(String(100), nullable=False, default="*")
    frequency = Column(_enum_column(DeliveryFrequency, "delivery_frequency"), nullable=False)
    __table_args__ = (
        UniqueConstraint("user_id", "notification_type", name="uq_preference_user_type"),
    )


class Obligation(Base):
    """Regulatory obligation tracked for a site."""

    __tablename__ = "obligations"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=True)
    title = Column(String(500), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Deadline(Base):
    """Due date attached to an obligation."""

    __tablename__ = "deadlines"

    id = Column(Integer, primary_key=True)
    obligation_id = Column(Integer, ForeignKey("obligations.id"), nullable=False)
    due_date = Column(Date, nullable=False)
    status = Column(
        _enum_column(DeadlineStatus, "deadline_status"),
        nullable=False,
        default=DeadlineStatus.PENDING,
    )
    __table_args__ = (Index("ix_deadlines_status_due", "status", "due_date"),)


class EvidenceItem(Base):
    """Uploaded evidence that can satisfy obligations."""

    __tablename__ = "evidence_items"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    title = Column(String(500), nullable=True)
    status = Column(
        _enum_column(EvidenceStatus, "evidence_status"),
        nullable=False,
        default=EvidenceStatus.ACTIVE,
    )
    expiry_date = Column(Date, nullable=True)


class ObligationEvidenceLink(Base):
    """Link between an obligation and an evidence item."""

    __tablename__ = "obligation_evidence_links"

    id = Column(Integer, primary_key=True)
    obligation_id = Column(Integer, ForeignKey("obligations.id"), nullable=False)
    evidence_id = Column(Integer, ForeignKey("evidence_items.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    unlinked_at = Column(DateTime(timezone=True), nullable=True)
    __table_args__ = (
        Index("ix_obligation_evidence_links_obligation", "obligation_id"),
    )


class ReviewQueueItem(Base):
    """Extracted record waiting for human review."""

    __tablename__ = "review_queue_items"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=True)
    obligation_id = Column(Integer, ForeignKey("obligations.id"), nullable=True)
    review_type = Column(String(100), nullable=False)
    review_status = Column(
        _enum_column(ReviewStatus, "review_status"),
        nullable=False,
        default=ReviewStatus.PENDING,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ContractorLicence(Base):
    """Contractor licence with an expiry date."""

    __tablename__ = "contractor_licences"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=True)
    contractor_name = Column(String(200), nullable=False)
    licence_number = Column(String(100), nullable=True)
    expiry_date = Column(Date, nullable=False)
    renewed_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Generator(Base):
    """Generator that requires a periodic stack emissions test."""

    __tablename__ = "generators"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    site_id = Column(Integer, ForeignKey("sites.id"), nullable=True)
    identifier = Column(String(100), nullable=False)
    next_stack_test_due = Column(Date, nullable=True)
    last_test_completed_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


# Engine-owned tables


class EscalationState(Base):
    """Current escalation level for one monitored item.

    Levels only move up through conditional updates; a reset returns the
    level to 0 and opens a new at-risk window.
    """

    __tablename__ = "escalation_states"

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    company_id = Column(Integer, nullable=True)
    site_id = Column(Integer, nullable=True)
    escalation_level = Column(Integer, nullable=False, default=0)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    last_notification_at = Column(DateTime(timezone=True), nullable=True)
    last_notification_level = Column(Integer, nullable=True)
    window_started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_escalation_state_item"),
    )


class Notification(Base):
    """Notification addressed to one recipient through one channel."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_address = Column(String(320), nullable=True)
    company_id = Column(Integer, nullable=True)
    site_id = Column(Integer, nullable=True)
    notification_type = Column(String(100), nullable=False)
    channel = Column(String(20), nullable=False, default="EMAIL")
    priority = Column(Integer, nullable=False, default=int(NotificationPriority.NORMAL))
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Integer, nullable=True)
    escalation_level = Column(Integer, nullable=True)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    action_url = Column(String(1000), nullable=True)
    status = Column(
        _enum_column(NotificationStatus, "notification_status"),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    scheduled_for = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivery_provider = Column(String(50), nullable=True)
    delivery_provider_id = Column(String(200), nullable=True, index=True)
    delivery_status = Column(String(50), nullable=True)
    delivery_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    digest_type = Column(String(10), nullable=True)
    digest_window = Column(String(10), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    lease_token = Column(String(64), nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    __table_args__ = (
        Index(
            "ix_notifications_item_level",
            "recipient_id",
            "entity_type",
            "entity_id",
            "escalation_level",
            "created_at",
        ),
        Index("ix_notifications_status_scheduled", "status", "scheduled_for"),
        Index("ix_notifications_recipient_created", "recipient_id", "channel", "created_at"),
    )


class EscalationHistory(Base):
    """Append-only audit row for an escalation level change."""

    __tablename__ = "escalation_history"

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    previous_level = Column(Integer, nullable=False)
    new_level = Column(Integer, nullable=False)
    hours_pending = Column(Float, nullable=True)
    escalated_to = Column(JSON, nullable=False, default=list)
    notification_sent = Column(Boolean, nullable=False, default=False)
    reason = Column(String(100), nullable=True)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    __table_args__ = (Index("ix_escalation_history_item", "entity_type", "entity_id"),)


class DeadLetterEntry(Base):
    """Notification that exhausted delivery, preserved for manual inspection."""

    __tablename__ = "dead_letters"

    id = Column(Integer, primary_key=True)
    notification_id = Column(Integer, ForeignKey("notifications.id"), nullable=True)
    job_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)


class JobRun(Base):
    """Progress record for one periodic job invocation."""

    __tablename__ = "job_runs"

    id = Column(Integer, primary_key=True)
    job_name = Column(String(100), nullable=False)
    status = Column(
        _enum_column(JobRunStatus, "job_run_status"),
        nullable=False,
        default=JobRunStatus.RUNNING,
    )
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    heartbeat_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    stats = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    __table_args__ = (Index("ix_job_runs_status_heartbeat", "status", "heartbeat_at"),)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@event.listens_for(Base, "load", propagate=True)
def _normalize_timestamps_on_load(target: object, _context: object) -> None:
    """Ensure loaded timestamps retain timezone awareness on SQLite."""
    for column in target.__table__.columns:
        if not isinstance(column.type, DateTime):
            continue
        key = target.__mapper__.get_property_by_column(column).key
        value = target.__dict__.get(key)
        if isinstance(value, datetime) and value.tzinfo is None:
            set_committed_value(target, key, _ensure_aware_timestamp(value))


@event.listens_for(Base, "refresh", propagate=True)
def _normalize_timestamps_on_refresh(target: object, context: object, _attrs: object) -> None:
    """Apply the same normalization when expired attributes are reloaded."""
    _normalize_timestamps_on_load(target, context)
