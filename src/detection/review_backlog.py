"""Review queue backlog detector."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from sqlalchemy import func
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
    elapsed_hours,
    highest_crossed_level,
)
from errors import CandidateDataError
from models import EscalationState, Obligation, ReviewQueueItem, ReviewStatus
from store import latest_valid_evidence_at, load_escalation_states
from time_utils import ensure_aware

logger = logging.getLogger(__name__)

_LEVEL_SEVERITY = {
    0: Severity.LOW,
    1: Severity.MEDIUM,
    2: Severity.HIGH,
    3: Severity.CRITICAL,
}


class ReviewBacklogDetector(Detector):
    """Find pending review items that crossed an escalation level not yet reached.

    Items whose current level was never notified are also returned so the
    cycle can emit the missing notification.
    """

    domain = Domain.REVIEW

    def __init__(self, thresholds_hours: Sequence[int] | None = None) -> None:
        if thresholds_hours is None:
            thresholds_hours = settings.escalation.thresholds_hours.get(self.domain.value, [])
        self.thresholds_hours = list(thresholds_hours)

    def detect(
        self,
        session: Session,
        now: datetime,
        scope: Scope | None = None,
    ) -> list[Candidate]:
        now = ensure_aware(now)
        company_id = func.coalesce(ReviewQueueItem.company_id, Obligation.company_id)
        site_id = func.coalesce(ReviewQueueItem.site_id, Obligation.site_id)
        query = (
            session.query(ReviewQueueItem, company_id, site_id)
            .outerjoin(Obligation, Obligation.id == ReviewQueueItem.obligation_id)
            .filter(ReviewQueueItem.review_status == ReviewStatus.PENDING)
        )
        query = apply_scope(query, company_id, site_id, scope)
        rows = query.order_by(ReviewQueueItem.created_at.asc(), ReviewQueueItem.id.asc()).all()
        if not rows:
            return []

        states = load_escalation_states(session, self.domain.value, [item.id for item, _, _ in rows])
        resolutions = latest_valid_evidence_at(
            session,
            [item.obligation_id for item, _, _ in rows if item.obligation_id is not None],
            now.date(),
        )

        candidates: list[Candidate] = []
        for item, item_company_id, item_site_id in rows:
            try:
                candidate = self._candidate_for(
                    item,
                    item_company_id,
                    item_site_id,
                    states.get(item.id),
                    resolutions,
                    now,
                )
            except CandidateDataError as exc:
                logger.warning("Skipping review item=%s: %s", item.id, exc)
                continue
            if candidate is not None:
                candidates.append(candidate)
        logger.debug("Review backlog detector found %s candidate(s)", len(candidates))
        return candidates

    def _candidate_for(
        self,
        item: ReviewQueueItem,
        company_id: int | None,
        site_id: int | None,
        state: EscalationState | None,
        resolutions: dict[int, datetime],
        now: datetime,
    ) -> Candidate | None:
        if company_id is None:
            raise CandidateDataError("no resolvable company for escalation")
        created_at = ensure_aware(item.created_at)
        hours_pending = elapsed_hours(created_at, state, now)
        crossed = highest_crossed_level(hours_pending, self.thresholds_hours)
        current = state.escalation_level if state is not None else 0
        unnotified = (
            state is not None
            and state.escalation_level > 0
            and state.last_notification_level != state.escalation_level
        )
        if crossed <= current and not unnotified:
            return None
        return Candidate(
            item_ref=ItemRef(self.domain, item.id),
            scope=Scope(company_id, site_id),
            reference_time=created_at,
            severity_hint=_LEVEL_SEVERITY[max(crossed, current)],
            hours_pending=hours_pending,
            resolution_at=resolutions.get(item.obligation_id),
            condition_active=True,
            domain_payload={
                "review_type": item.review_type,
                "obligation_id": item.obligation_id,
                "hours_pending": round(hours_pending or 0.0, 1),
            },
        )
