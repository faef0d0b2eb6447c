"""Job run bookkeeping and stale-job detection."""

from __future__ import annotations

import logging
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from sqlalchemy.orm import Session

from errors import best_effort
from models import JobRun, JobRunStatus
from time_utils import ensure_aware, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaleJob:
    """A job still RUNNING whose heartbeat is older than the threshold."""

    id: int
    job_name: str
    started_at: datetime
    heartbeat_at: datetime
    minutes_since_heartbeat: float


def start_job_run(session: Session, job_name: str, now: datetime) -> JobRun:
    """Insert a RUNNING job row and commit it."""
    run = JobRun(
        job_name=job_name,
        status=JobRunStatus.RUNNING,
        started_at=now,
        heartbeat_at=now,
    )
    session.add(run)
    session.commit()
    return run


def heartbeat(session: Session, job_run_id: int, now: datetime) -> None:
    """Record progress on a running job."""
    session.query(JobRun).filter(JobRun.id == job_run_id).filter(
        JobRun.status == JobRunStatus.RUNNING
    ).update({JobRun.heartbeat_at: now}, synchronize_session=False)
    session.commit()


def finish_job_run(
    session: Session,
    job_run_id: int,
    now: datetime,
    *,
    stats: dict[str, Any] | None = None,
    error: str | None = None,
) -> None:
    """Mark a job SUCCEEDED, or FAILED when ``error`` is given."""
    status = JobRunStatus.FAILED if error else JobRunStatus.SUCCEEDED
    session.query(JobRun).filter(JobRun.id == job_run_id).update(
        {
            JobRun.status: status,
            JobRun.finished_at: now,
            JobRun.heartbeat_at: now,
            JobRun.stats: stats,
            JobRun.error: error,
        },
        synchronize_session=False,
    )
    session.commit()


def find_stale_jobs(
    session: Session,
    now: datetime,
    threshold_minutes: int,
) -> list[StaleJob]:
    """Return RUNNING jobs with no heartbeat for ``threshold_minutes``.

    Stale jobs are only reported. Killing a job with unknown side effects
    risks double sends.
    """
    now = ensure_aware(now)
    cutoff = now - timedelta(minutes=threshold_minutes)
    rows = (
        session.query(JobRun)
        .filter(JobRun.status == JobRunStatus.RUNNING)
        .filter(JobRun.heartbeat_at < cutoff)
        .order_by(JobRun.heartbeat_at.asc(), JobRun.id.asc())
        .all()
    )
    return [
        StaleJob(
            id=row.id,
            job_name=row.job_name,
            started_at=row.started_at,
            heartbeat_at=row.heartbeat_at,
            minutes_since_heartbeat=round((now - row.heartbeat_at).total_seconds() / 60.0, 1),
        )
        for row in rows
    ]


class JobRunTracker:
    """Handle yielded by :func:`tracked_job`.

    ``stats`` collects the job's counters; ``heartbeat`` records progress so
    a long but healthy job is never reported stale. Heartbeats closer than
    ``min_interval_seconds`` apart are skipped to keep writes bounded.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        job_name: str,
        *,
        clock: Callable[[], datetime],
        min_interval_seconds: float,
    ) -> None:
        self.job_name = job_name
        self.run_id: int | None = None
        self.stats: dict[str, Any] = {}
        self._session_factory = session_factory
        self._clock = clock
        self._min_interval = timedelta(seconds=min_interval_seconds)
        self._last_beat: datetime | None = None

    def start(self) -> None:
        now = self._clock()
        with best_effort(logger, "start job run %s", self.job_name):
            with closing(self._session_factory()) as session:
                self.run_id = start_job_run(session, self.job_name, now).id
                self._last_beat = now

    def heartbeat(self) -> None:
        if self.run_id is None:
            return
        now = self._clock()
        if self._last_beat is not None and now - self._last_beat < self._min_interval:
            return
        with best_effort(logger, "heartbeat job run %s", self.job_name):
            with closing(self._session_factory()) as session:
                heartbeat(session, self.run_id, now)
            self._last_beat = now

    def finish(self, error: str | None = None) -> None:
        if self.run_id is None:
            return
        with best_effort(logger, "finish job run %s", self.job_name):
            with closing(self._session_factory()) as session:
                finish_job_run(session, self.run_id, self._clock(), stats=self.stats, error=error)


@contextmanager
def tracked_job(
    session_factory: Callable[[], Session],
    job_name: str,
    *,
    clock: Callable[[], datetime] = utc_now,
    min_interval_seconds: float = 30.0,
) -> Iterator[JobRunTracker]:
    """Record a job run around a block of work.

    The block fills ``tracker.stats`` and calls ``tracker.heartbeat`` as it
    makes progress. Bookkeeping failures are logged and never mask the
    job's own outcome.
    """
    tracker = JobRunTracker(
        session_factory,
        job_name,
        clock=clock,
        min_interval_seconds=min_interval_seconds,
    )
    tracker.start()
    try:
        yield tracker
    except Exception as exc:
        tracker.finish(error=str(exc) or repr(exc))
        raise
    tracker.finish()
