"""Tiered expiry detectors for contractor licences and generator stack tests."""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import or_, select
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
    match_window,
    severity_for_tier,
)
from models import ContractorLicence, EscalationState, Generator
from store import load_escalation_states
from time_utils import days_until, end_of_day, ensure_aware, start_of_day

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiringItem:
    """Normalized view of a record with an expiry or due date."""

    entity_id: int
    scope: Scope
    due_date: date
    resolution_at: datetime | None
    payload: dict[str, Any] = field(default_factory=dict)


class ExpiryDetector(Detector):
    """Shared tier logic for records that expire on a date.

    Besides items inside the look-ahead horizon, items still escalated from
    an earlier window are returned with ``condition_active=False`` so a
    renewal can reset them.
    """

    def __init__(self, windows_days: Sequence[int]) -> None:
        self.windows_days = sorted(windows_days, reverse=True)

    @abstractmethod
    def _load_items(
        self,
        session: Session,
        horizon: date,
        escalated_ids,
        scope: Scope | None,
    ) -> list[ExpiringItem]:
        """Return items due before the horizon or still escalated."""

    def detect(
        self,
        session: Session,
        now: datetime,
        scope: Scope | None = None,
    ) -> list[Candidate]:
        now = ensure_aware(now)
        horizon = now.date() + timedelta(days=max(self.windows_days))
        escalated_ids = select(EscalationState.entity_id).where(
            EscalationState.entity_type == self.domain.value,
            EscalationState.escalation_level > 0,
        )
        items = self._load_items(session, horizon, escalated_ids, scope)
        states = load_escalation_states(session, self.domain.value, [item.entity_id for item in items])

        candidates: list[Candidate] = []
        for item in items:
            remaining = days_until(item.due_date, now)
            tier = match_window(remaining, self.windows_days)
            hours_pending = None
            if remaining < 0:
                hours_pending = elapsed_hours(
                    end_of_day(item.due_date), states.get(item.entity_id), now
                )
            severity = severity_for_tier(tier, self.windows_days) if tier else Severity.LOW
            candidates.append(
                Candidate(
                    item_ref=ItemRef(self.domain, item.entity_id),
                    scope=item.scope,
                    reference_time=start_of_day(item.due_date),
                    severity_hint=severity,
                    tier=tier,
                    tier_period_start=start_of_day(
                        item.due_date - timedelta(days=max(self.windows_days) + 1)
                    ),
                    hours_pending=hours_pending,
                    resolution_at=item.resolution_at,
                    condition_active=tier is not None,
                    domain_payload={
                        **item.payload,
                        "due_date": item.due_date.isoformat(),
                        "days_until": remaining,
                    },
                )
            )
        logger.debug("%s detector found %s candidate(s)", self.domain.value, len(candidates))
        return candidates


class LicenceExpiryDetector(ExpiryDetector):
    """Contractor licences approaching or past expiry; renewal resolves them."""

    domain = Domain.LICENCE

    def __init__(self, windows_days: Sequence[int] | None = None) -> None:
        super().__init__(windows_days or settings.detection.licence_windows_days)

    def _load_items(self, session, horizon, escalated_ids, scope):
        query = (
            session.query(ContractorLicence)
            .filter(ContractorLicence.deleted_at.is_(None))
            .filter(
                or_(
                    ContractorLicence.expiry_date <= horizon,
                    ContractorLicence.id.in_(escalated_ids),
                )
            )
        )
        query = apply_scope(query, ContractorLicence.company_id, ContractorLicence.site_id, scope)
        return [
            ExpiringItem(
                entity_id=licence.id,
                scope=Scope(licence.company_id, licence.site_id),
                due_date=licence.expiry_date,
                resolution_at=licence.renewed_at,
                payload={
                    "contractor_name": licence.contractor_name,
                    "licence_number": licence.licence_number,
                },
            )
            for licence in query.order_by(ContractorLicence.expiry_date.asc()).all()
        ]


class StackTestDetector(ExpiryDetector):
    """Generators whose periodic stack test is due or overdue."""

    domain = Domain.STACK_TEST

    def __init__(self, windows_days: Sequence[int] | None = None) -> None:
        super().__init__(windows_days or settings.detection.stack_test_windows_days)

    def _load_items(self, session, horizon, escalated_ids, scope):
        query = (
            session.query(Generator)
            .filter(Generator.deleted_at.is_(None))
            .filter(Generator.next_stack_test_due.isnot(None))
            .filter(
                or_(
                    Generator.next_stack_test_due <= horizon,
                    Generator.id.in_(escalated_ids),
                )
            )
        )
        query = apply_scope(query, Generator.company_id, Generator.site_id, scope)
        return [
            ExpiringItem(
                entity_id=generator.id,
                scope=Scope(generator.company_id, generator.site_id),
                due_date=generator.next_stack_test_due,
                resolution_at=generator.last_test_completed_at,
                payload={"identifier": generator.identifier},
            )
            for generator in query.order_by(Generator.next_stack_test_due.asc()).all()
        ]
