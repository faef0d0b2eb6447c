"""Digest batching for deferred notifications."""

from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from delivery.channels import Channel
from errors import ChannelError
from escalation.notifications import transition_status
from models import (
    DeliveryFrequency,
    DigestType,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationStatus,
    User,
)
from time_utils import daily_window, ensure_aware, weekly_window

logger = logging.getLogger(__name__)

_FREQUENCY_DIGEST = {
    DeliveryFrequency.DAILY_DIGEST: DigestType.DAILY,
    DeliveryFrequency.WEEKLY_DIGEST: DigestType.WEEKLY,
}


@dataclass(frozen=True)
class DigestMessage:
    """Rendered summary covering every collected notification."""

    recipient_id: int
    recipient_address: str | None
    digest_type: DigestType
    window: str
    subject: str
    body: str
    priority: int
    notification_ids: tuple[int, ...]
    sections: tuple[tuple[str, tuple[int, ...]], ...]


@dataclass(frozen=True)
class DigestFlushResult:
    """Outcome of flushing one recipient's digest."""

    recipient_id: int
    sent: bool
    count: int
    reason: str
    provider_message_id: str | None = None


def digest_window_for(digest_type: DigestType, now: datetime) -> str:
    """Return the window key a notification queued at ``now`` belongs to."""
    if DigestType(digest_type) == DigestType.WEEKLY:
        return weekly_window(now)
    return daily_window(now)


def resolve_delivery_frequency(
    session: Session,
    user_id: int,
    notification_type: str,
) -> DeliveryFrequency:
    """Return the user's preference for a type, falling back to '*' then IMMEDIATE."""
    preferences = (
        session.query(NotificationPreference)
        .filter(NotificationPreference.user_id == user_id)
        .filter(NotificationPreference.notification_type.in_([notification_type, "*"]))
        .all()
    )
    by_type = {pref.notification_type: pref.frequency for pref in preferences}
    frequency = by_type.get(notification_type) or by_type.get("*")
    if frequency is None:
        return DeliveryFrequency.IMMEDIATE
    return DeliveryFrequency(frequency)


def digest_type_for(frequency: DeliveryFrequency) -> DigestType | None:
    """Return the digest cadence for a preference, or None for direct delivery."""
    return _FREQUENCY_DIGEST.get(DeliveryFrequency(frequency))


def queue_for_digest(
    notification: Notification,
    digest_type: DigestType,
    now: datetime,
    *,
    reason: str,
) -> None:
    """Mark a notification QUEUED for the digest window containing ``now``."""
    digest_type = DigestType(digest_type)
    transition_status(notification, NotificationStatus.QUEUED, now)
    notification.digest_type = digest_type.value
    notification.digest_window = digest_window_for(digest_type, now)
    notification.locked_until = None
    notification.meta = {
        **(notification.meta or {}),
        "queued_for_digest": True,
        "queued_at": now.isoformat(),
        "defer_reason": reason,
    }


def collect(
    session: Session,
    recipient_id: int,
    digest_type: DigestType,
    window: str,
) -> list[Notification]:
    """Return QUEUED notifications for the recipient up to and including ``window``.

    Earlier windows are included so a failed flush is retried next time.
    """
    return (
        session.query(Notification)
        .filter(Notification.recipient_id == recipient_id)
        .filter(Notification.status == NotificationStatus.QUEUED)
        .filter(Notification.digest_type == DigestType(digest_type).value)
        .filter(Notification.digest_window <= window)
        .order_by(
            Notification.priority.desc(),
            Notification.created_at.asc(),
            Notification.id.asc(),
        )
        .all()
    )


def render_digest(
    recipient_id: int,
    recipient_address: str | None,
    digest_type: DigestType,
    window: str,
    notifications: list[Notification],
) -> DigestMessage:
    """Render one summary grouped by notification type.

    ``notifications`` must already be ordered by priority then creation
    time; groups appear in the order of their first member.
    """
    groups: "OrderedDict[str, list[Notification]]" = OrderedDict()
    for notification in notifications:
        groups.setdefault(notification.notification_type, []).append(notification)

    label = "Daily" if DigestType(digest_type) == DigestType.DAILY else "Weekly"
    lines = [f"{label} compliance digest ({window})", ""]
    for notification_type, members in groups.items():
        lines.append(f"{notification_type.replace('_', ' ').title()} ({len(members)})")
        for member in members:
            priority = NotificationPriority(member.priority).name
            line = f"  - [{priority}] {member.subject}"
            if member.action_url:
                line = f"{line} <{member.action_url}>"
            lines.append(line)
        lines.append("")

    count = len(notifications)
    subject = f"{label} digest: {count} compliance notification{'s' if count != 1 else ''}"
    return DigestMessage(
        recipient_id=recipient_id,
        recipient_address=recipient_address,
        digest_type=DigestType(digest_type),
        window=window,
        subject=subject,
        body="\n".join(lines).rstrip() + "\n",
        priority=max((n.priority for n in notifications), default=int(NotificationPriority.LOW)),
        notification_ids=tuple(n.id for n in notifications),
        sections=tuple((key, tuple(n.id for n in members)) for key, members in groups.items()),
    )


def _claim_rows(
    session: Session,
    rows: list[Notification],
    now: datetime,
    lease_seconds: int,
) -> list[Notification]:
    """Lease collected rows so concurrent flushes never send them twice."""
    lease_until = now + timedelta(seconds=lease_seconds)
    claimed_ids = []
    for row in rows:
        updated = (
            session.query(Notification)
            .filter(Notification.id == row.id)
            .filter(Notification.status == NotificationStatus.QUEUED)
            .filter(
                (Notification.locked_until.is_(None)) | (Notification.locked_until < now)
            )
            .update({Notification.locked_until: lease_until}, synchronize_session=False)
        )
        if updated == 1:
            claimed_ids.append(row.id)
    session.commit()
    claimed = set(claimed_ids)
    return [row for row in rows if row.id in claimed]


def flush(
    session: Session,
    channel: Channel,
    recipient_id: int,
    digest_type: DigestType,
    window: str,
    now: datetime,
    *,
    lease_seconds: int | None = None,
) -> DigestFlushResult:
    """Send one digest for the recipient and mark its sources SENT on success.

    Zero eligible notifications is a no-op. On delivery failure the sources
    stay QUEUED for the next flush.
    """
    now = ensure_aware(now)
    rows = collect(session, recipient_id, digest_type, window)
    if not rows:
        return DigestFlushResult(recipient_id=recipient_id, sent=False, count=0, reason="empty")

    user = session.get(User, recipient_id)
    if user is None or not user.is_active or user.deleted_at is not None or not user.email:
        for row in rows:
            transition_status(row, NotificationStatus.CANCELLED, now)
            row.meta = {**(row.meta or {}), "cancel_reason": "recipient_unavailable"}
        session.commit()
        logger.info(
            "Digest cancelled for unavailable recipient=%s count=%s", recipient_id, len(rows)
        )
        return DigestFlushResult(
            recipient_id=recipient_id,
            sent=False,
            count=len(rows),
            reason="recipient_unavailable",
        )

    rows = _claim_rows(session, rows, now, lease_seconds or settings.delivery.lease_seconds)
    if not rows:
        return DigestFlushResult(recipient_id=recipient_id, sent=False, count=0, reason="claimed")

    message = render_digest(recipient_id, user.email, digest_type, window, rows)
    try:
        provider_id = channel.send(user.email, message.subject, message.body, message.priority)
    except ChannelError as exc:
        for row in rows:
            row.locked_until = None
            row.meta = {**(row.meta or {}), "last_digest_error": str(exc)}
        session.commit()
        logger.warning(
            "Digest delivery failed: recipient=%s count=%s error=%s",
            recipient_id,
            len(rows),
            exc,
        )
        return DigestFlushResult(
            recipient_id=recipient_id,
            sent=False,
            count=len(rows),
            reason="delivery_failed",
        )

    for row in rows:
        transition_status(row, NotificationStatus.SENT, now)
        row.sent_at = now
        row.locked_until = None
        row.delivery_provider = channel.provider_name
        row.delivery_provider_id = provider_id
        row.meta = {
            **(row.meta or {}),
            "sent_via_digest": True,
            "digest_window": window,
        }
    session.commit()
    logger.info(
        "Digest sent: recipient=%s type=%s window=%s count=%s",
        recipient_id,
        DigestType(digest_type).value,
        window,
        len(rows),
    )
    return DigestFlushResult(
        recipient_id=recipient_id,
        sent=True,
        count=len(rows),
        reason="sent",
        provider_message_id=provider_id,
    )


def flush_due_digests(
    *,
    session_factory: Callable[[], Session],
    channel: Channel,
    digest_type: DigestType,
    now: datetime,
    progress: Callable[[], None] | None = None,
) -> dict[str, int]:
    """Flush every recipient holding QUEUED notifications of ``digest_type``."""
    now = ensure_aware(now)
    digest_type = DigestType(digest_type)
    window = digest_window_for(digest_type, now)
    with closing(session_factory()) as session:
        recipient_ids = [
            row[0]
            for row in session.query(Notification.recipient_id)
            .filter(Notification.status == NotificationStatus.QUEUED)
            .filter(Notification.digest_type == digest_type.value)
            .filter(Notification.digest_window <= window)
            .distinct()
            .all()
        ]

    stats = {"recipients": len(recipient_ids), "sent": 0, "notifications": 0, "failed": 0}
    for recipient_id in recipient_ids:
        with closing(session_factory()) as session:
            try:
                result = flush(session, channel, recipient_id, digest_type, window, now)
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Digest flush failed for recipient=%s", recipient_id)
                stats["failed"] += 1
            else:
                if result.sent:
                    stats["sent"] += 1
                    stats["notifications"] += result.count
                elif result.reason == "delivery_failed":
                    stats["failed"] += 1
        if progress is not None:
            progress()
    logger.info(
        "Digest flush completed: type=%s window=%s recipients=%s sent=%s failed=%s",
        digest_type.value,
        window,
        stats["recipients"],
        stats["sent"],
        stats["failed"],
    )
    return stats
