"""Notification status transitions and message construction."""

from __future__ import annotations

import logging
from datetime import datetime

from config import settings
from detection.base import Candidate, Domain, Severity
from errors import IllegalTransitionError
from escalation.recipients import Recipient
from models import Notification, NotificationPriority, NotificationStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset(
        {
            NotificationStatus.QUEUED,
            NotificationStatus.SENT,
            NotificationStatus.RETRYING,
            NotificationStatus.FAILED,
            NotificationStatus.CANCELLED,
        }
    ),
    NotificationStatus.RETRYING: frozenset(
        {
            NotificationStatus.QUEUED,
            NotificationStatus.SENT,
            NotificationStatus.RETRYING,
            NotificationStatus.FAILED,
            NotificationStatus.CANCELLED,
        }
    ),
    NotificationStatus.QUEUED: frozenset({NotificationStatus.SENT, NotificationStatus.CANCELLED}),
    NotificationStatus.SENT: frozenset(),
    NotificationStatus.FAILED: frozenset(),
    NotificationStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

_SEVERITY_PRIORITY = {
    Severity.LOW: NotificationPriority.LOW,
    Severity.MEDIUM: NotificationPriority.NORMAL,
    Severity.HIGH: NotificationPriority.HIGH,
    Severity.CRITICAL: NotificationPriority.URGENT,
}
_LEVEL_PRIORITY = {
    1: NotificationPriority.NORMAL,
    2: NotificationPriority.HIGH,
    3: NotificationPriority.URGENT,
}

_DOMAIN_LABELS = {
    Domain.DEADLINE: "Deadline",
    Domain.REVIEW: "Review item",
    Domain.LICENCE: "Contractor licence",
    Domain.STACK_TEST: "Stack test",
    Domain.EVIDENCE_GAP: "Evidence gap",
}
_DOMAIN_PATHS = {
    Domain.DEADLINE: "obligations",
    Domain.REVIEW: "review-queue",
    Domain.LICENCE: "contractors",
    Domain.STACK_TEST: "generators",
    Domain.EVIDENCE_GAP: "obligations",
}
_LEVEL_LABELS = {1: "site management", 2: "company management", 3: "company owners"}


def can_transition(current: NotificationStatus, target: NotificationStatus) -> bool:
    """Return whether the transition table allows ``current`` -> ``target``."""
    return target in ALLOWED_TRANSITIONS[NotificationStatus(current)]


def transition_status(
    notification: Notification,
    target: NotificationStatus,
    now: datetime,
) -> None:
    """Move a notification to ``target`` or raise IllegalTransitionError."""
    current = NotificationStatus(notification.status)
    if not can_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)
    notification.status = target
    notification.updated_at = now


def alert_type(candidate: Candidate) -> str:
    """Notification type for a once-per-tier alert."""
    return f"{candidate.item_ref.domain.value.upper()}_{candidate.tier}"


def escalation_type(candidate: Candidate, level: int) -> str:
    """Notification type for an escalation to ``level``."""
    return f"{candidate.item_ref.domain.value.upper()}_ESCALATION_L{level}"


def priority_for(candidate: Candidate, level: int) -> NotificationPriority:
    """Priority from the severity hint, raised by the escalation level."""
    priority = _SEVERITY_PRIORITY[candidate.severity_hint]
    return max(priority, _LEVEL_PRIORITY.get(level, NotificationPriority.LOW))


def action_url(candidate: Candidate) -> str:
    """Link back into the host application for the item."""
    domain = candidate.item_ref.domain
    entity_id = candidate.domain_payload.get("obligation_id") or candidate.item_ref.entity_id
    if domain == Domain.REVIEW:
        entity_id = candidate.item_ref.entity_id
    return f"{settings.app_url.rstrip('/')}/{_DOMAIN_PATHS[domain]}/{entity_id}"


def render_subject(candidate: Candidate, level: int) -> str:
    label = _DOMAIN_LABELS[candidate.item_ref.domain]
    name = _display_name(candidate)
    if level > 0:
        return f"[Escalation L{level}] {label} unresolved: {name}"
    if candidate.tier == "OVERDUE":
        return f"{label} overdue: {name}"
    if candidate.item_ref.domain == Domain.EVIDENCE_GAP:
        return f"{label} ({candidate.severity_hint.value}): {name}"
    remaining = candidate.domain_payload.get("days_until")
    if remaining == 0:
        return f"{label} due today: {name}"
    return f"{label} due in {remaining} day(s): {name}"


def render_body(candidate: Candidate, level: int) -> str:
    payload = candidate.domain_payload
    lines = [render_subject(candidate, level), ""]
    if "due_date" in payload:
        lines.append(f"Due date: {payload['due_date']}")
    if candidate.hours_pending is not None:
        lines.append(f"Hours pending: {candidate.hours_pending:.1f}")
    if "gap_type" in payload:
        lines.append(f"Gap: {payload['gap_type']}")
    if level > 0:
        lines.append(f"Escalated to {_LEVEL_LABELS.get(level, 'management')}.")
    lines.append(f"Severity: {candidate.severity_hint.value}")
    lines.append("")
    lines.append(f"Open: {action_url(candidate)}")
    return "\n".join(lines)


def build_notification(
    candidate: Candidate,
    recipient: Recipient,
    *,
    notification_type: str,
    level: int,
    now: datetime,
    channel: str = "EMAIL",
) -> Notification:
    """Build a PENDING notification row for one recipient."""
    return Notification(
        recipient_id=recipient.user_id,
        recipient_address=recipient.email,
        company_id=candidate.scope.company_id,
        site_id=candidate.scope.site_id,
        notification_type=notification_type,
        channel=channel,
        priority=int(priority_for(candidate, level)),
        entity_type=candidate.item_ref.domain.value,
        entity_id=candidate.item_ref.entity_id,
        escalation_level=level,
        subject=render_subject(candidate, level),
        body=render_body(candidate, level),
        action_url=action_url(candidate),
        status=NotificationStatus.PENDING,
        scheduled_for=now,
        created_at=now,
        updated_at=now,
        retry_count=0,
        meta={
            "severity": candidate.severity_hint.value,
            "tier": candidate.tier,
            "escalation_level": level,
            "domain_payload": candidate.domain_payload,
        },
    )


def _display_name(candidate: Candidate) -> str:
    payload = candidate.domain_payload
    for key in ("title", "contractor_name", "identifier", "review_type"):
        if payload.get(key):
            return str(payload[key])
    return str(candidate.item_ref)
