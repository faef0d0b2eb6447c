"""Unit tests for the notification delivery dispatcher."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from delivery.dispatcher import DeliveryDispatcher, DeliveryOutcome, claim_due_notifications
from delivery.retry_policy import RetryPolicy
from errors import PermanentChannelError, TransientChannelError
from escalation.rate_limiter import RateLimitConfig
from models import DeadLetterEntry, Notification, NotificationStatus

NOW = datetime(2025, 5, 5, 10, 0, tzinfo=timezone.utc)
POLICY = RetryPolicy(max_retries=3, backoff_base_seconds=300, backoff_cap_seconds=3600)
RATE_LIMIT = RateLimitConfig(channel="EMAIL", cooldown_hours=24, max_per_window=10, window_seconds=3600)


def _dispatcher(session_factory: sessionmaker, channel, clock_at: datetime = NOW) -> DeliveryDispatcher:
    return DeliveryDispatcher(
        session_factory=session_factory,
        channel=channel,
        retry_policy=POLICY,
        rate_limit_config=RATE_LIMIT,
        lease_seconds=300,
        rng=lambda: 1.0,
        clock=lambda: clock_at,
    )


def _load(session_factory: sessionmaker, notification_id: int) -> Notification:
    with closing(session_factory()) as session:
        notification = session.get(Notification, notification_id)
        session.expunge(notification)
        return notification


def _user(records, **kwargs) -> int:
    return records.user(records.company(), email="ops@example.com", **kwargs)


def test_pending_notification_is_sent(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """A due notification is sent and marked SENT with provider details."""
    user_id = _user(records)
    notification_id = records.notification(
        user_id, created_at=NOW, recipient_address="ops@example.com", priority=3
    )

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(NOW)

    assert stats["claimed"] == 1
    assert stats["sent"] == 1
    assert recording_channel.sent[0]["recipient_address"] == "ops@example.com"
    notification = _load(sqlite_session_factory, notification_id)
    assert notification.status == NotificationStatus.SENT
    assert notification.sent_at == NOW
    assert notification.delivery_provider == "TEST"
    assert notification.delivery_provider_id == "msg-1"
    assert notification.locked_until is None


def test_future_and_terminal_notifications_are_not_claimed(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """Only due PENDING or RETRYING rows are dispatched."""
    user_id = _user(records)
    records.notification(user_id, created_at=NOW, scheduled_for=NOW + timedelta(minutes=5))
    records.notification(user_id, created_at=NOW, status=NotificationStatus.SENT)
    records.notification(user_id, created_at=NOW, status=NotificationStatus.QUEUED)

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(NOW)

    assert stats["claimed"] == 0
    assert recording_channel.sent == []


def test_claim_orders_by_priority_and_honours_leases(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Higher priority first; a leased row is not claimed twice."""
    user_id = _user(records)
    low = records.notification(user_id, created_at=NOW - timedelta(minutes=5), priority=1)
    urgent = records.notification(user_id, created_at=NOW, priority=4)

    with closing(sqlite_session_factory()) as session:
        first = claim_due_notifications(session, NOW, limit=10, lease_seconds=300)
        session.commit()
    with closing(sqlite_session_factory()) as session:
        second = claim_due_notifications(session, NOW, limit=10, lease_seconds=300)
        session.commit()
    with closing(sqlite_session_factory()) as session:
        expired = claim_due_notifications(
            session, NOW + timedelta(minutes=6), limit=10, lease_seconds=300
        )
        session.commit()

    assert first == [urgent, low]
    assert second == []
    assert expired == [urgent, low]


def test_transient_failure_schedules_retry_with_backoff(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """A timeout moves the row to RETRYING with the first backoff delay."""
    user_id = _user(records)
    notification_id = records.notification(user_id, created_at=NOW)
    recording_channel.errors.append(TransientChannelError("Email provider timeout"))

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(NOW)

    assert stats["retryable_failure"] == 1
    notification = _load(sqlite_session_factory, notification_id)
    assert notification.status == NotificationStatus.RETRYING
    assert notification.retry_count == 1
    assert notification.scheduled_for == NOW + timedelta(seconds=300)
    assert notification.delivery_error == "Email provider timeout"


def test_retries_exhausted_dead_letters_notification(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """Four consecutive timeouts end FAILED with a dead letter at retry count three."""
    user_id = _user(records)
    notification_id = records.notification(user_id, created_at=NOW)
    recording_channel.errors.extend(
        TransientChannelError("Email provider timeout") for _ in range(4)
    )
    dispatcher = _dispatcher(sqlite_session_factory, recording_channel)

    outcomes = []
    for attempt in range(4):
        stats = dispatcher.dispatch_due(NOW + timedelta(hours=attempt))
        outcomes.append((stats["retryable_failure"], stats["permanent_failure"]))

    assert outcomes == [(1, 0), (1, 0), (1, 0), (0, 1)]
    notification = _load(sqlite_session_factory, notification_id)
    assert notification.status == NotificationStatus.FAILED
    assert notification.retry_count == 3
    assert notification.meta["max_retries_exceeded"] is True
    with closing(sqlite_session_factory()) as session:
        (entry,) = session.query(DeadLetterEntry).all()
        assert entry.notification_id == notification_id
        assert entry.retry_count == 3
        assert entry.error_message == "Max retries exceeded: Email provider timeout"
        assert entry.payload["subject"] == "Subject"
        assert notification.meta["dead_letter_id"] == entry.id

    assert dispatcher.dispatch_due(NOW + timedelta(hours=5))["claimed"] == 0


def test_permanent_failure_skips_retries(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """A permanent error fails the row immediately."""
    user_id = _user(records)
    notification_id = records.notification(user_id, created_at=NOW)
    recording_channel.errors.append(PermanentChannelError("invalid recipient"))

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(NOW)

    assert stats["permanent_failure"] == 1
    notification = _load(sqlite_session_factory, notification_id)
    assert notification.status == NotificationStatus.FAILED
    assert notification.retry_count == 0
    with closing(sqlite_session_factory()) as session:
        (entry,) = session.query(DeadLetterEntry).all()
        assert entry.error_message == "invalid recipient"


def test_disabled_preference_cancels(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """Users who disabled a type never receive it."""
    user_id = _user(records)
    records.preference(user_id, "DISABLED", notification_type="DEADLINE_7D")
    notification_id = records.notification(user_id, created_at=NOW)

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(NOW)

    assert stats["cancelled"] == 1
    assert recording_channel.sent == []
    notification = _load(sqlite_session_factory, notification_id)
    assert notification.status == NotificationStatus.CANCELLED
    assert notification.meta["cancel_reason"] == "user_disabled"


def test_digest_preference_queues(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """Digest preferences route the row to the digest queue."""
    user_id = _user(records)
    records.preference(user_id, "WEEKLY_DIGEST")
    notification_id = records.notification(user_id, created_at=NOW)

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(NOW)

    assert stats["deferred"] == 1
    notification = _load(sqlite_session_factory, notification_id)
    assert notification.status == NotificationStatus.QUEUED
    assert notification.digest_type == "WEEKLY"
    assert notification.digest_window == "2025-W19"


def test_volume_cap_defers_to_daily_digest(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """A recipient who already received a full window gets the digest instead."""
    user_id = _user(records)
    for minute in range(10):
        records.notification(
            user_id,
            created_at=NOW - timedelta(minutes=minute + 1),
            status=NotificationStatus.SENT,
        )
    notification_id = records.notification(user_id, created_at=NOW)

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(NOW)

    assert stats["deferred"] == 1
    assert recording_channel.sent == []
    notification = _load(sqlite_session_factory, notification_id)
    assert notification.status == NotificationStatus.QUEUED
    assert notification.digest_type == "DAILY"
    assert notification.meta["defer_reason"] == "volume_cap_exceeded"


def test_reclaimed_row_is_sent_once_across_workers(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """A worker whose lease expired does not resend a row another worker delivered."""
    user_id = _user(records)
    notification_id = records.notification(
        user_id, created_at=NOW, recipient_address="ops@example.com"
    )
    with closing(sqlite_session_factory()) as session:
        claimed = claim_due_notifications(
            session, NOW, limit=10, lease_seconds=300, lease_token="worker-a"
        )
        session.commit()
    assert claimed == [notification_id]

    later = NOW + timedelta(seconds=400)
    stats = _dispatcher(sqlite_session_factory, recording_channel, clock_at=later).dispatch_due(later)
    assert stats["claimed"] == 1
    assert stats["sent"] == 1

    with closing(sqlite_session_factory()) as session:
        notification = session.get(Notification, notification_id)
        outcome = _dispatcher(sqlite_session_factory, recording_channel).deliver(
            session, notification, NOW, lease_token="worker-a"
        )

    assert outcome == DeliveryOutcome.SKIPPED
    assert len(recording_channel.sent) == 1
    assert _load(sqlite_session_factory, notification_id).status == NotificationStatus.SENT


def test_worker_that_lost_its_lease_skips_before_sending(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """Only the current lease holder may send a still-pending row."""
    user_id = _user(records)
    notification_id = records.notification(user_id, created_at=NOW)
    later = NOW + timedelta(seconds=400)
    with closing(sqlite_session_factory()) as session:
        claim_due_notifications(session, NOW, limit=10, lease_seconds=300, lease_token="worker-a")
        session.commit()
    with closing(sqlite_session_factory()) as session:
        claimed = claim_due_notifications(
            session, later, limit=10, lease_seconds=300, lease_token="worker-b"
        )
        session.commit()
    assert claimed == [notification_id]

    first = _dispatcher(sqlite_session_factory, recording_channel)
    with closing(sqlite_session_factory()) as session:
        outcome_a = first.deliver(
            session, session.get(Notification, notification_id), NOW, lease_token="worker-a"
        )
    assert outcome_a == DeliveryOutcome.SKIPPED
    assert recording_channel.sent == []

    second = _dispatcher(sqlite_session_factory, recording_channel, clock_at=later)
    with closing(sqlite_session_factory()) as session:
        outcome_b = second.deliver(
            session, session.get(Notification, notification_id), later, lease_token="worker-b"
        )
    assert outcome_b == DeliveryOutcome.SENT
    assert len(recording_channel.sent) == 1


def test_deliver_skips_terminal_rows(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """A row that is already SENT is never handed to the channel again."""
    user_id = _user(records)
    notification_id = records.notification(
        user_id, created_at=NOW, status=NotificationStatus.SENT
    )

    with closing(sqlite_session_factory()) as session:
        outcome = _dispatcher(sqlite_session_factory, recording_channel).deliver(
            session, session.get(Notification, notification_id), NOW
        )

    assert outcome == DeliveryOutcome.SKIPPED
    assert recording_channel.sent == []


def test_dispatch_reports_progress_per_row(
    sqlite_session_factory: sessionmaker,
    records,
    recording_channel,
) -> None:
    """The progress callback fires once for every claimed row."""
    user_id = _user(records)
    for minute in range(3):
        records.notification(user_id, created_at=NOW - timedelta(minutes=minute))
    beats: list[int] = []

    stats = _dispatcher(sqlite_session_factory, recording_channel).dispatch_due(
        NOW, progress=lambda: beats.append(1)
    )

    assert stats["sent"] == 3
    assert len(beats) == 3
