"""Operator-facing diagnostics: dead letters, stale jobs, and delivery health."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from delivery.dead_letter import list_dead_letters
from models import EscalationState, Notification, NotificationStatus
from scheduler.job_runs import find_stale_jobs
from time_utils import ensure_aware

logger = logging.getLogger(__name__)


def dead_letter_summary(session: Session, *, limit: int = 100) -> list[dict[str, Any]]:
    """Return unresolved dead-letter entries, newest first."""
    return [
        {
            "id": entry.id,
            "notification_id": entry.notification_id,
            "job_type": entry.job_type,
            "error_message": entry.error_message,
            "retry_count": entry.retry_count,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
            "payload": entry.payload,
        }
        for entry in list_dead_letters(session, limit=limit)
    ]


def stale_job_summary(
    session: Session,
    now: datetime,
    threshold_minutes: int | None = None,
) -> list[dict[str, Any]]:
    """Return RUNNING jobs whose heartbeat is older than the threshold."""
    threshold = threshold_minutes or settings.jobs.stale_after_minutes
    jobs = find_stale_jobs(session, now, threshold)
    if jobs:
        logger.warning("Found %s stale job(s) older than %s minutes", len(jobs), threshold)
    return [
        {
            "id": job.id,
            "job_name": job.job_name,
            "started_at": job.started_at.isoformat(),
            "heartbeat_at": job.heartbeat_at.isoformat(),
            "minutes_since_heartbeat": job.minutes_since_heartbeat,
        }
        for job in jobs
    ]


def notification_status_counts(session: Session, since: datetime) -> dict[str, int]:
    """Count notifications created since ``since`` by lifecycle status."""
    rows = (
        session.query(Notification.status, func.count(Notification.id))
        .filter(Notification.created_at >= since)
        .group_by(Notification.status)
        .all()
    )
    counts = {status.value: 0 for status in NotificationStatus}
    for status, count in rows:
        counts[NotificationStatus(status).value] = int(count)
    return counts


def escalation_level_counts(session: Session) -> dict[str, int]:
    """Count tracked items per current escalation level."""
    rows = (
        session.query(EscalationState.escalation_level, func.count(EscalationState.id))
        .group_by(EscalationState.escalation_level)
        .all()
    )
    return {str(level): int(count) for level, count in rows}


def build_operator_report(session: Session, now: datetime) -> dict[str, Any]:
    """Assemble the operator report covering the last 24 hours."""
    now = ensure_aware(now)
    dead_letters = dead_letter_summary(session)
    stale_jobs = stale_job_summary(session, now)
    return {
        "generated_at": now.isoformat(),
        "dead_letters": {"count": len(dead_letters), "entries": dead_letters},
        "stale_jobs": {"count": len(stale_jobs), "entries": stale_jobs},
        "notifications_last_24h": notification_status_counts(session, now - timedelta(hours=24)),
        "escalation_levels": escalation_level_counts(session),
    }
