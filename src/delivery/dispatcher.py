"""Delivery dispatcher for pending and retrying notifications."""

from __future__ import annotations

import enum
import logging
import random
import uuid
from contextlib import closing
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import settings
from delivery.channels import Channel
from delivery.dead_letter import write_dead_letter
from delivery.retry_policy import (
    RetryPolicy,
    compute_retry_at,
    resolve_retry_policy,
    should_retry,
)
from errors import PermanentChannelError, TransientChannelError
from escalation.digest import digest_type_for, queue_for_digest, resolve_delivery_frequency
from escalation.notifications import transition_status
from escalation.rate_limiter import VOLUME_CAP_EXCEEDED, RateLimitConfig, volume_cap_reached
from models import DeliveryFrequency, DigestType, Notification, NotificationStatus
from time_utils import ensure_aware, utc_now

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = (NotificationStatus.PENDING, NotificationStatus.RETRYING)


class DeliveryOutcome(str, enum.Enum):
    """Result of one delivery attempt."""

    SENT = "SENT"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"
    DEFERRED = "DEFERRED"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


def claim_due_notifications(
    session: Session,
    now: datetime,
    *,
    limit: int,
    lease_seconds: int,
    lease_token: str | None = None,
) -> list[int]:
    """Lease due notifications for this worker and return their ids.

    Rows are ordered by priority (highest first) then creation time. A row
    is claimed only if no other worker holds an unexpired lease on it; the
    claim stamps ``lease_token`` so the holder can be checked before sending.
    """
    lease_token = lease_token or uuid.uuid4().hex
    lease_open = or_(Notification.locked_until.is_(None), Notification.locked_until < now)
    candidate_ids = [
        row[0]
        for row in session.query(Notification.id)
        .filter(Notification.status.in_(DISPATCHABLE_STATUSES))
        .filter(Notification.scheduled_for <= now)
        .filter(lease_open)
        .order_by(
            Notification.priority.desc(),
            Notification.created_at.asc(),
            Notification.id.asc(),
        )
        .limit(limit)
        .all()
    ]
    lease_until = now + timedelta(seconds=lease_seconds)
    claimed: list[int] = []
    for notification_id in candidate_ids:
        updated = (
            session.query(Notification)
            .filter(Notification.id == notification_id)
            .filter(Notification.status.in_(DISPATCHABLE_STATUSES))
            .filter(lease_open)
            .update(
                {Notification.locked_until: lease_until, Notification.lease_token: lease_token},
                synchronize_session=False,
            )
        )
        if updated == 1:
            claimed.append(notification_id)
    return claimed


class DeliveryDispatcher:
    """Sends due notifications and drives retry, backoff, and dead-lettering."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        channel: Channel,
        retry_policy: RetryPolicy | None = None,
        rate_limit_config: RateLimitConfig | None = None,
        lease_seconds: int | None = None,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._channel = channel
        self._policy = resolve_retry_policy(retry_policy)
        self._rate_limit = rate_limit_config or RateLimitConfig.from_settings()
        self._lease_seconds = lease_seconds or settings.delivery.lease_seconds
        self._rng = rng
        self._clock = clock

    def dispatch_due(
        self,
        now: datetime,
        batch_size: int | None = None,
        *,
        progress: Callable[[], None] | None = None,
    ) -> dict[str, int]:
        """Claim and deliver one batch of due notifications.

        ``progress`` is called after every claimed row.
        """
        now = ensure_aware(now)
        limit = batch_size or settings.delivery.batch_size
        lease_token = uuid.uuid4().hex
        with closing(self._session_factory()) as session:
            claimed = claim_due_notifications(
                session,
                now,
                limit=limit,
                lease_seconds=self._lease_seconds,
                lease_token=lease_token,
            )
            session.commit()

        stats = {outcome.value.lower(): 0 for outcome in DeliveryOutcome}
        stats["claimed"] = len(claimed)
        stats["errors"] = 0
        for notification_id in claimed:
            with closing(self._session_factory()) as session:
                try:
                    notification = session.get(Notification, notification_id)
                    if notification is not None:
                        outcome = self.deliver(session, notification, now, lease_token=lease_token)
                        stats[outcome.value.lower()] += 1
                except Exception:
                    session.rollback()
                    stats["errors"] += 1
                    logger.exception(
                        "Delivery failed for notification=%s; lease will expire",
                        notification_id,
                    )
            if progress is not None:
                progress()
        logger.info(
            "Delivery run completed: claimed=%s sent=%s retrying=%s failed=%s deferred=%s "
            "cancelled=%s skipped=%s errors=%s",
            stats["claimed"],
            stats["sent"],
            stats["retryable_failure"],
            stats["permanent_failure"],
            stats["deferred"],
            stats["cancelled"],
            stats["skipped"],
            stats["errors"],
        )
        return stats

    def deliver(
        self,
        session: Session,
        notification: Notification,
        now: datetime,
        *,
        lease_token: str | None = None,
    ) -> DeliveryOutcome:
        """Route or send one notification and persist the resulting status.

        The row is re-checked and its lease renewed by a conditional update
        before anything else happens. A row that is no longer dispatchable,
        or whose lease now belongs to another worker, is skipped. Without a
        ``lease_token`` the row is claimed here if its lease is open.
        """
        now = ensure_aware(now)
        if NotificationStatus(notification.status) not in DISPATCHABLE_STATUSES:
            return DeliveryOutcome.SKIPPED
        if not self._hold_lease(session, notification, now, lease_token):
            logger.info(
                "Notification skipped, lease held elsewhere: notification=%s", notification.id
            )
            return DeliveryOutcome.SKIPPED

        frequency = resolve_delivery_frequency(
            session, notification.recipient_id, notification.notification_type
        )
        if frequency == DeliveryFrequency.DISABLED:
            transition_status(notification, NotificationStatus.CANCELLED, now)
            notification.locked_until = None
            notification.meta = {**(notification.meta or {}), "cancel_reason": "user_disabled"}
            session.commit()
            return DeliveryOutcome.CANCELLED

        digest_type = digest_type_for(frequency)
        if digest_type is not None:
            queue_for_digest(notification, digest_type, now, reason="user_preference")
            notification.locked_until = None
            session.commit()
            return DeliveryOutcome.DEFERRED

        if NotificationStatus(notification.status) == NotificationStatus.PENDING and volume_cap_reached(
            session,
            notification.recipient_id,
            now,
            self._rate_limit,
            exclude_id=notification.id,
            company_id=notification.company_id,
        ):
            queue_for_digest(notification, DigestType.DAILY, now, reason=VOLUME_CAP_EXCEEDED)
            notification.locked_until = None
            session.commit()
            return DeliveryOutcome.DEFERRED

        try:
            provider_id = self._channel.send(
                notification.recipient_address or "",
                notification.subject,
                notification.body,
                notification.priority,
            )
        except TransientChannelError as exc:
            return self._handle_transient_failure(session, notification, str(exc), now)
        except PermanentChannelError as exc:
            return self._fail(session, notification, str(exc), now, permanent=True)

        transition_status(notification, NotificationStatus.SENT, now)
        notification.sent_at = now
        notification.locked_until = None
        notification.delivery_provider = self._channel.provider_name
        notification.delivery_provider_id = provider_id
        notification.delivery_error = None
        session.commit()
        logger.info(
            "Notification sent: notification=%s provider_id=%s", notification.id, provider_id
        )
        return DeliveryOutcome.SENT

    def _hold_lease(
        self,
        session: Session,
        notification: Notification,
        now: datetime,
        lease_token: str | None,
    ) -> bool:
        """Renew this worker's lease on the row right before it is handled."""
        ownership = (
            Notification.lease_token == lease_token
            if lease_token is not None
            else or_(Notification.locked_until.is_(None), Notification.locked_until < now)
        )
        lease_from = max(now, ensure_aware(self._clock()))
        updated = (
            session.query(Notification)
            .filter(Notification.id == notification.id)
            .filter(Notification.status.in_(DISPATCHABLE_STATUSES))
            .filter(ownership)
            .update(
                {
                    Notification.locked_until: lease_from + timedelta(seconds=self._lease_seconds),
                    Notification.lease_token: lease_token or uuid.uuid4().hex,
                },
                synchronize_session=False,
            )
        )
        session.expire(notification)
        session.commit()
        return updated == 1

    def _handle_transient_failure(
        self,
        session: Session,
        notification: Notification,
        error: str,
        now: datetime,
    ) -> DeliveryOutcome:
        retry_count = notification.retry_count or 0
        if not should_retry(retry_count, self._policy.max_retries):
            return self._fail(session, notification, error, now, permanent=False)

        retry_count += 1
        transition_status(notification, NotificationStatus.RETRYING, now)
        notification.retry_count = retry_count
        notification.scheduled_for = compute_retry_at(now, retry_count, self._policy, rng=self._rng)
        notification.locked_until = None
        notification.delivery_error = error
        notification.meta = {
            **(notification.meta or {}),
            "retry_count": retry_count,
            "last_retry_at": now.isoformat(),
        }
        session.commit()
        logger.info(
            "Notification delivery will retry: notification=%s retry=%s next=%s error=%s",
            notification.id,
            retry_count,
            notification.scheduled_for.isoformat(),
            error,
        )
        return DeliveryOutcome.RETRYABLE_FAILURE

    def _fail(
        self,
        session: Session,
        notification: Notification,
        error: str,
        now: datetime,
        *,
        permanent: bool,
    ) -> DeliveryOutcome:
        transition_status(notification, NotificationStatus.FAILED, now)
        notification.locked_until = None
        notification.delivery_error = error
        notification.meta = {
            **(notification.meta or {}),
            "failed_at": now.isoformat(),
            "max_retries_exceeded": not permanent,
        }
        write_dead_letter(
            session,
            notification,
            error if permanent else f"Max retries exceeded: {error}",
            now,
        )
        session.commit()
        return DeliveryOutcome.PERMANENT_FAILURE
