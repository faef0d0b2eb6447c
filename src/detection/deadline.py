"""Deadline window detector."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy.orm import Session

from config import settings
from detection.base import (
    Candidate,
    Detector,
    Domain,
    ItemRef,
    Scope,
    apply_scope,
    elapsed_hours,
    match_window,
    severity_for_tier,
)
from models import Deadline, DeadlineStatus, Obligation
from store import latest_valid_evidence_at, load_escalation_states, obligations_with_valid_evidence
from time_utils import days_until, end_of_day, ensure_aware, start_of_day

logger = logging.getLogger(__name__)


class DeadlineDetector(Detector):
    """Find pending deadlines inside a look-ahead window or already overdue.

    Escalation starts once the due date has passed; the elapsed measure is
    hours since the end of the due date. A valid evidence link on the
    obligation is the resolution signal.
    """

    domain = Domain.DEADLINE

    def __init__(self, windows_days: Sequence[int] | None = None) -> None:
        self.windows_days = sorted(
            windows_days or settings.detection.deadline_windows_days,
            reverse=True,
        )

    def detect(
        self,
        session: Session,
        now: datetime,
        scope: Scope | None = None,
    ) -> list[Candidate]:
        now = ensure_aware(now)
        today = now.date()
        horizon = today + timedelta(days=max(self.windows_days))
        query = (
            session.query(Deadline, Obligation)
            .join(Obligation, Obligation.id == Deadline.obligation_id)
            .filter(Deadline.status == DeadlineStatus.PENDING)
            .filter(Obligation.deleted_at.is_(None))
            .filter(Deadline.due_date <= horizon)
        )
        query = apply_scope(query, Obligation.company_id, Obligation.site_id, scope)
        rows = query.order_by(Deadline.due_date.asc(), Deadline.id.asc()).all()
        if not rows:
            return []

        obligation_ids = [obligation.id for _, obligation in rows]
        resolutions = latest_valid_evidence_at(session, obligation_ids, today)
        covered = obligations_with_valid_evidence(session, obligation_ids, today)
        states = load_escalation_states(
            session, self.domain.value, [deadline.id for deadline, _ in rows]
        )

        candidates: list[Candidate] = []
        for deadline, obligation in rows:
            remaining = days_until(deadline.due_date, now)
            tier = match_window(remaining, self.windows_days)
            if tier is None:
                continue
            hours_pending = None
            if remaining < 0:
                hours_pending = elapsed_hours(
                    end_of_day(deadline.due_date), states.get(deadline.id), now
                )
            period_start = start_of_day(
                deadline.due_date - timedelta(days=max(self.windows_days) + 1)
            )
            candidates.append(
                Candidate(
                    item_ref=ItemRef(self.domain, deadline.id),
                    scope=Scope(obligation.company_id, obligation.site_id),
                    reference_time=start_of_day(deadline.due_date),
                    severity_hint=severity_for_tier(tier, self.windows_days),
                    tier=tier,
                    tier_period_start=period_start,
                    hours_pending=hours_pending,
                    resolution_at=resolutions.get(obligation.id),
                    condition_active=obligation.id not in covered,
                    domain_payload={
                        "obligation_id": obligation.id,
                        "title": obligation.title,
                        "due_date": deadline.due_date.isoformat(),
                        "days_until": remaining,
                    },
                )
            )
        logger.debug("Deadline detector found %s candidate(s)", len(candidates))
        return candidates
