"""Shared detector interface and threshold evaluation helpers."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy.orm import Query, Session

from models import EscalationState
from time_utils import hours_between

OVERDUE = "OVERDUE"


class Domain(str, enum.Enum):
    """Monitored domains, each backed by one detector."""

    DEADLINE = "deadline"
    REVIEW = "review"
    LICENCE = "licence"
    STACK_TEST = "stack_test"
    EVIDENCE_GAP = "evidence_gap"


class Severity(str, enum.Enum):
    """Severity hint attached to a candidate."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class ItemRef:
    """Identity of one monitored item."""

    domain: Domain
    entity_id: int

    def __str__(self) -> str:
        return f"{self.domain.value}:{self.entity_id}"


@dataclass(frozen=True)
class Scope:
    """Organizational scope used for filtering and recipient resolution."""

    company_id: int | None
    site_id: int | None = None


@dataclass(frozen=True)
class Candidate:
    """An at-risk item identified by a detector in the current cycle.

    ``tier`` names the alert bucket that fires once per item (``7D``,
    ``OVERDUE``, ``CRITICAL``); alerts are deduplicated from
    ``tier_period_start`` onward. ``hours_pending`` is the elapsed measure
    fed to the escalation thresholds and is ``None`` when the item is not
    yet eligible for escalation.
    """

    item_ref: ItemRef
    scope: Scope
    reference_time: datetime
    severity_hint: Severity
    domain_payload: dict[str, Any] = field(default_factory=dict)
    tier: str | None = None
    tier_period_start: datetime | None = None
    hours_pending: float | None = None
    resolution_at: datetime | None = None
    condition_active: bool = True


class Detector(ABC):
    """Read-only query that turns domain records into candidates."""

    domain: Domain

    @abstractmethod
    def detect(
        self,
        session: Session,
        now: datetime,
        scope: Scope | None = None,
    ) -> list[Candidate]:
        """Return candidates for the given time and optional scope."""


def match_window(days_until: int, windows_days: Sequence[int]) -> str | None:
    """Return the most urgent look-ahead window matching the days remaining.

    Negative values are overdue. Returns ``None`` when the item is outside
    every window.
    """
    if days_until < 0:
        return OVERDUE
    matching = [window for window in windows_days if days_until <= window]
    if not matching:
        return None
    return f"{min(matching)}D"


def severity_for_tier(tier: str, windows_days: Sequence[int]) -> Severity:
    """Map a window tier to a severity; closer windows are more severe."""
    if tier == OVERDUE:
        return Severity.CRITICAL
    ordered = sorted(windows_days)
    position = ordered.index(int(tier.rstrip("D")))
    if position == 0:
        return Severity.HIGH
    if position == 1:
        return Severity.MEDIUM
    return Severity.LOW


def highest_crossed_level(hours_pending: float | None, thresholds_hours: Sequence[int]) -> int:
    """Return the highest escalation level whose threshold has been reached."""
    if hours_pending is None:
        return 0
    level = 0
    for index, threshold in enumerate(thresholds_hours, start=1):
        if hours_pending >= threshold:
            level = index
    return level


def elapsed_hours(
    reference_time: datetime,
    state: EscalationState | None,
    now: datetime,
) -> float | None:
    """Return hours elapsed since the later of the reference and the window start."""
    start = reference_time
    if state is not None and state.window_started_at is not None:
        start = max(start, state.window_started_at)
    hours = hours_between(start, now)
    if hours < 0:
        return None
    return hours


def apply_scope(query: Query, company_column, site_column, scope: Scope | None) -> Query:
    """Restrict a query to a company and optionally a site."""
    if scope is None:
        return query
    if scope.company_id is not None:
        query = query.filter(company_column == scope.company_id)
    if scope.site_id is not None:
        query = query.filter(site_column == scope.site_id)
    return query
