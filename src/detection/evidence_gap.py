"""Evidence gap detector."""

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
    Severity,
    apply_scope,
)
from models import Deadline, DeadlineStatus, Obligation
from store import obligations_with_linked_evidence, obligations_with_valid_evidence
from time_utils import days_until, ensure_aware, start_of_day

logger = logging.getLogger(__name__)

NO_EVIDENCE = "NO_EVIDENCE"
EXPIRED_EVIDENCE = "EXPIRED_EVIDENCE"


def classify_gap_severity(days_remaining: int) -> Severity:
    """Classify an evidence gap by days until the deadline."""
    if days_remaining <= 3:
        return Severity.CRITICAL
    if days_remaining <= 7:
        return Severity.HIGH
    if days_remaining <= 14:
        return Severity.MEDIUM
    return Severity.LOW


class EvidenceGapDetector(Detector):
    """Find obligations with an upcoming or overdue deadline and no valid evidence.

    One candidate per obligation, keyed to its earliest pending deadline.
    Only configured severities carry an alert tier.
    """

    domain = Domain.EVIDENCE_GAP

    def __init__(
        self,
        days_ahead: int | None = None,
        notify_severities: Sequence[str] | None = None,
    ) -> None:
        self.days_ahead = days_ahead or settings.detection.evidence_gap_days_ahead
        self.notify_severities = set(
            notify_severities or settings.detection.evidence_gap_notify_severities
        )

    def detect(
        self,
        session: Session,
        now: datetime,
        scope: Scope | None = None,
    ) -> list[Candidate]:
        now = ensure_aware(now)
        today = now.date()
        horizon = today + timedelta(days=self.days_ahead)
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
        covered = obligations_with_valid_evidence(session, obligation_ids, today)
        linked = obligations_with_linked_evidence(session, obligation_ids)

        candidates: list[Candidate] = []
        seen: set[int] = set()
        for deadline, obligation in rows:
            if obligation.id in seen or obligation.id in covered:
                continue
            seen.add(obligation.id)
            remaining = days_until(deadline.due_date, now)
            severity = classify_gap_severity(remaining)
            gap_type = EXPIRED_EVIDENCE if obligation.id in linked else NO_EVIDENCE
            tier = severity.value if severity.value in self.notify_severities else None
            candidates.append(
                Candidate(
                    item_ref=ItemRef(self.domain, obligation.id),
                    scope=Scope(obligation.company_id, obligation.site_id),
                    reference_time=start_of_day(deadline.due_date),
                    severity_hint=severity,
                    tier=tier,
                    tier_period_start=start_of_day(
                        deadline.due_date - timedelta(days=self.days_ahead + 1)
                    ),
                    domain_payload={
                        "obligation_id": obligation.id,
                        "deadline_id": deadline.id,
                        "title": obligation.title,
                        "due_date": deadline.due_date.isoformat(),
                        "days_until": remaining,
                        "gap_type": gap_type,
                    },
                )
            )
        logger.debug("Evidence gap detector found %s candidate(s)", len(candidates))
        return candidates
