"""Dead-letter store for notifications that could not be delivered."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from models import DeadLetterEntry, Notification

logger = logging.getLogger(__name__)

NOTIFICATION_DELIVERY_JOB = "NOTIFICATION_DELIVERY"


def notification_payload(notification: Notification) -> dict[str, object]:
    """Snapshot of the original notification for manual inspection."""
    return {
        "notification_id": notification.id,
        "recipient_id": notification.recipient_id,
        "recipient_address": notification.recipient_address,
        "company_id": notification.company_id,
        "site_id": notification.site_id,
        "notification_type": notification.notification_type,
        "channel": notification.channel,
        "priority": notification.priority,
        "entity_type": notification.entity_type,
        "entity_id": notification.entity_id,
        "escalation_level": notification.escalation_level,
        "subject": notification.subject,
        "body": notification.body,
        "action_url": notification.action_url,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "metadata": dict(notification.meta or {}),
    }


def write_dead_letter(
    session: Session,
    notification: Notification,
    error_message: str,
    now: datetime,
    *,
    job_type: str = NOTIFICATION_DELIVERY_JOB,
) -> DeadLetterEntry:
    """Persist a dead-letter row and reference it from the notification metadata."""
    entry = DeadLetterEntry(
        notification_id=notification.id,
        job_type=job_type,
        payload=notification_payload(notification),
        error_message=error_message,
        retry_count=notification.retry_count or 0,
        created_at=now,
    )
    session.add(entry)
    session.flush()
    notification.meta = {**(notification.meta or {}), "dead_letter_id": entry.id}
    logger.warning(
        "Notification dead-lettered: notification=%s dead_letter=%s retries=%s error=%s",
        notification.id,
        entry.id,
        entry.retry_count,
        error_message,
    )
    return entry


def list_dead_letters(
    session: Session,
    *,
    include_resolved: bool = False,
    limit: int = 100,
) -> list[DeadLetterEntry]:
    """Return dead-letter rows, newest first."""
    query = session.query(DeadLetterEntry)
    if not include_resolved:
        query = query.filter(DeadLetterEntry.resolved_at.is_(None))
    return query.order_by(DeadLetterEntry.created_at.desc(), DeadLetterEntry.id.desc()).limit(limit).all()


def resolve_dead_letter(session: Session, entry_id: int, now: datetime) -> bool:
    """Mark a dead-letter row as handled by an operator."""
    entry = session.get(DeadLetterEntry, entry_id)
    if entry is None or entry.resolved_at is not None:
        return False
    entry.resolved_at = now
    session.flush()
    return True
