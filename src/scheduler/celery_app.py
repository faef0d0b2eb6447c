"""Celery entry point for periodic detection, delivery, and digest jobs."""

from __future__ import annotations

import logging
import os
from contextlib import closing
from datetime import datetime, timezone
from typing import Any, Callable

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging
from sqlalchemy.orm import Session

from config import settings
from delivery.channels import Channel, ResendEmailChannel
from delivery.dispatcher import DeliveryDispatcher
from detection.base import Domain
from escalation.cycle import run_cycle
from escalation.digest import flush_due_digests
from logging_config import configure_logging
from models import DigestType
from scheduler.job_runs import find_stale_jobs, tracked_job
from services.database import get_sync_session

LOGGER = logging.getLogger(__name__)

_WEEKDAY_NUMBERS = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}


def _env(var: str, default: str) -> str:
    return os.environ.get(var, default)


celery_app = Celery("alerting")
celery_app.conf.broker_url = _env("CELERY_BROKER_URL", "redis://redis:6379/1")
celery_app.conf.result_backend = _env("CELERY_RESULT_BACKEND", "redis://redis:6379/2")
celery_app.conf.task_default_queue = _env("CELERY_QUEUE_NAME", "alerting")
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"


def _flush_clock() -> tuple[str, str]:
    hour, minute = settings.digest.flush_time.split(":")
    return str(int(hour)), str(int(minute))


def build_beat_schedule() -> dict[str, dict[str, Any]]:
    """Return the periodic trigger table for every alerting job."""
    hour, minute = _flush_clock()
    weekly_day = _WEEKDAY_NUMBERS[settings.digest.weekly_day.lower()]
    return {
        "alerting.detect_deadlines": {
            "task": "alerting.detect_deadlines",
            "schedule": crontab(minute="0", hour="*/6"),
        },
        "alerting.detect_review_backlog": {
            "task": "alerting.detect_review_backlog",
            "schedule": crontab(minute="15", hour="*/4"),
        },
        "alerting.detect_licences": {
            "task": "alerting.detect_licences",
            "schedule": crontab(minute="30", hour="6"),
        },
        "alerting.detect_stack_tests": {
            "task": "alerting.detect_stack_tests",
            "schedule": crontab(minute="45", hour="6"),
        },
        "alerting.detect_evidence_gaps": {
            "task": "alerting.detect_evidence_gaps",
            "schedule": crontab(minute="30", hour="*/6"),
        },
        "alerting.dispatch_notifications": {
            "task": "alerting.dispatch_notifications",
            "schedule": crontab(minute="*/5"),
        },
        "alerting.flush_daily_digests": {
            "task": "alerting.flush_daily_digests",
            "schedule": crontab(minute=minute, hour=hour),
        },
        "alerting.flush_weekly_digests": {
            "task": "alerting.flush_weekly_digests",
            "schedule": crontab(minute=minute, hour=hour, day_of_week=str(weekly_day)),
        },
        "alerting.scan_stale_jobs": {
            "task": "alerting.scan_stale_jobs",
            "schedule": crontab(minute="50"),
        },
    }


beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule.update(build_beat_schedule())
celery_app.conf.beat_schedule = beat_schedule


@setup_logging.connect
def _configure_worker_logging(**_kwargs: Any) -> None:
    configure_logging(settings.log_level)


def _session_factory():
    """Return a new synchronous SQLAlchemy session for alerting tasks."""
    return get_sync_session()


def _channel_factory() -> Channel:
    return ResendEmailChannel()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def run_detection_job(
    domain: Domain,
    *,
    session_factory: Callable[[], Session],
    now: datetime,
    dry_run: bool = False,
    clock: Callable[[], datetime] = _now,
) -> dict[str, Any]:
    """Run one detector cycle and record it as a job run."""
    job_name = f"detect_{Domain(domain).value}"
    with tracked_job(session_factory, job_name, clock=clock) as job:
        result = run_cycle(
            domain,
            session_factory=session_factory,
            now=now,
            dry_run=dry_run,
            progress=job.heartbeat,
        )
        job.stats.update(result.as_dict())
    return job.stats


def process_due_notifications(
    *,
    session_factory: Callable[[], Session],
    channel: Channel,
    now: datetime,
    batch_size: int | None = None,
    clock: Callable[[], datetime] = _now,
) -> dict[str, int]:
    """Deliver one batch of due notifications and record the job run."""
    with tracked_job(session_factory, "dispatch_notifications", clock=clock) as job:
        dispatcher = DeliveryDispatcher(session_factory=session_factory, channel=channel)
        job.stats.update(dispatcher.dispatch_due(now, batch_size, progress=job.heartbeat))
    return job.stats


def process_digest_flush(
    digest_type: DigestType,
    *,
    session_factory: Callable[[], Session],
    channel: Channel,
    now: datetime,
    clock: Callable[[], datetime] = _now,
) -> dict[str, int]:
    """Flush every recipient's digest of one type and record the job run."""
    job_name = f"flush_{DigestType(digest_type).value.lower()}_digests"
    with tracked_job(session_factory, job_name, clock=clock) as job:
        job.stats.update(
            flush_due_digests(
                session_factory=session_factory,
                channel=channel,
                digest_type=digest_type,
                now=now,
                progress=job.heartbeat,
            )
        )
    return job.stats


def scan_for_stale_jobs(
    *,
    session_factory: Callable[[], Session],
    now: datetime,
    threshold_minutes: int | None = None,
) -> dict[str, int]:
    """Log jobs stuck in RUNNING; they are surfaced, never killed."""
    threshold = threshold_minutes or settings.jobs.stale_after_minutes
    with closing(session_factory()) as session:
        stale = find_stale_jobs(session, now, threshold)
    for job in stale:
        LOGGER.warning(
            "Stale job detected: id=%s name=%s last_heartbeat=%s minutes=%s",
            job.id,
            job.job_name,
            job.heartbeat_at.isoformat(),
            job.minutes_since_heartbeat,
        )
    return {"stale": len(stale)}


@celery_app.task(name="alerting.detect_deadlines")
def detect_deadlines() -> dict[str, Any]:
    """Run the deadline window detector."""
    return run_detection_job(Domain.DEADLINE, session_factory=_session_factory, now=_now())


@celery_app.task(name="alerting.detect_review_backlog")
def detect_review_backlog() -> dict[str, Any]:
    """Run the review backlog detector."""
    return run_detection_job(Domain.REVIEW, session_factory=_session_factory, now=_now())


@celery_app.task(name="alerting.detect_licences")
def detect_licences() -> dict[str, Any]:
    """Run the contractor licence expiry detector."""
    return run_detection_job(Domain.LICENCE, session_factory=_session_factory, now=_now())


@celery_app.task(name="alerting.detect_stack_tests")
def detect_stack_tests() -> dict[str, Any]:
    """Run the generator stack test detector."""
    return run_detection_job(Domain.STACK_TEST, session_factory=_session_factory, now=_now())


@celery_app.task(name="alerting.detect_evidence_gaps")
def detect_evidence_gaps() -> dict[str, Any]:
    """Run the evidence gap detector."""
    return run_detection_job(Domain.EVIDENCE_GAP, session_factory=_session_factory, now=_now())


@celery_app.task(name="alerting.dispatch_notifications")
def dispatch_notifications() -> dict[str, int]:
    """Deliver due notifications."""
    return process_due_notifications(
        session_factory=_session_factory,
        channel=_channel_factory(),
        now=_now(),
    )


@celery_app.task(name="alerting.flush_daily_digests")
def flush_daily_digests() -> dict[str, int]:
    """Send daily digests."""
    return process_digest_flush(
        DigestType.DAILY,
        session_factory=_session_factory,
        channel=_channel_factory(),
        now=_now(),
    )


@celery_app.task(name="alerting.flush_weekly_digests")
def flush_weekly_digests() -> dict[str, int]:
    """Send weekly digests."""
    return process_digest_flush(
        DigestType.WEEKLY,
        session_factory=_session_factory,
        channel=_channel_factory(),
        now=_now(),
    )


@celery_app.task(name="alerting.scan_stale_jobs")
def scan_stale_jobs() -> dict[str, int]:
    """Report jobs whose heartbeat went quiet."""
    return scan_for_stale_jobs(session_factory=_session_factory, now=_now())
