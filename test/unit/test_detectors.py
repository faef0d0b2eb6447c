"""Unit tests for the domain detectors."""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import date, datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from detection.base import (
    OVERDUE,
    Domain,
    Scope,
    Severity,
    highest_crossed_level,
    match_window,
    severity_for_tier,
)
from detection.deadline import DeadlineDetector
from detection.evidence_gap import (
    EXPIRED_EVIDENCE,
    NO_EVIDENCE,
    EvidenceGapDetector,
    classify_gap_severity,
)
from detection.expiry import LicenceExpiryDetector, StackTestDetector
from detection.review_backlog import ReviewBacklogDetector
from models import EscalationState

NOW = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _detect(session_factory: sessionmaker, detector, scope=None):
    with closing(session_factory()) as session:
        return detector.detect(session, NOW, scope)


def test_match_window_picks_most_urgent_window() -> None:
    """The smallest window containing the remaining days wins."""
    windows = [7, 3, 1]

    assert match_window(7, windows) == "7D"
    assert match_window(5, windows) == "7D"
    assert match_window(2, windows) == "3D"
    assert match_window(0, windows) == "1D"
    assert match_window(-1, windows) == OVERDUE
    assert match_window(8, windows) is None


def test_severity_for_tier_is_ordered_by_urgency() -> None:
    """Closer windows are more severe and overdue is critical."""
    windows = [7, 3, 1]

    assert severity_for_tier("7D", windows) == Severity.LOW
    assert severity_for_tier("3D", windows) == Severity.MEDIUM
    assert severity_for_tier("1D", windows) == Severity.HIGH
    assert severity_for_tier(OVERDUE, windows) == Severity.CRITICAL


def test_highest_crossed_level() -> None:
    """Levels follow the thresholds reached by the elapsed hours."""
    thresholds = [48, 96, 168]

    assert highest_crossed_level(None, thresholds) == 0
    assert highest_crossed_level(47.9, thresholds) == 0
    assert highest_crossed_level(50, thresholds) == 1
    assert highest_crossed_level(100, thresholds) == 2
    assert highest_crossed_level(500, thresholds) == 3


def test_deadline_detector_tiers_and_overdue_hours(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Deadlines inside a window get a tier; overdue ones get elapsed hours."""
    company_id = records.company()
    site_id = records.site(company_id)
    obligation_id = records.obligation(company_id, site_id, title="Water permit")
    in_seven = records.deadline(obligation_id, TODAY + timedelta(days=7))
    overdue = records.deadline(obligation_id, TODAY - timedelta(days=2))
    records.deadline(obligation_id, TODAY + timedelta(days=30))
    records.deadline(obligation_id, TODAY - timedelta(days=5), status="COMPLETED")

    candidates = {c.item_ref.entity_id: c for c in _detect(sqlite_session_factory, DeadlineDetector())}

    assert set(candidates) == {in_seven, overdue}
    upcoming = candidates[in_seven]
    assert upcoming.tier == "7D"
    assert upcoming.severity_hint == Severity.LOW
    assert upcoming.hours_pending is None
    assert upcoming.scope == Scope(company_id, site_id)
    assert upcoming.domain_payload["days_until"] == 7
    assert upcoming.condition_active is True

    late = candidates[overdue]
    assert late.tier == OVERDUE
    assert late.severity_hint == Severity.CRITICAL
    # end of the due date was 1 day + 9 hours ago
    assert late.hours_pending == 33.0


def test_deadline_detector_reports_resolution_signal(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Valid evidence deactivates the condition and sets the resolution time."""
    company_id = records.company()
    obligation_id = records.obligation(company_id)
    deadline_id = records.deadline(obligation_id, TODAY - timedelta(days=1))
    linked_at = NOW - timedelta(hours=3)
    records.evidence(obligation_id, company_id, linked_at=linked_at)

    (candidate,) = _detect(sqlite_session_factory, DeadlineDetector())

    assert candidate.item_ref.entity_id == deadline_id
    assert candidate.condition_active is False
    assert candidate.resolution_at == linked_at


def test_deadline_detector_ignores_expired_or_unlinked_evidence(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Only linked, active, unexpired evidence counts as coverage."""
    company_id = records.company()
    obligation_id = records.obligation(company_id)
    records.deadline(obligation_id, TODAY + timedelta(days=1))
    records.evidence(
        obligation_id,
        company_id,
        linked_at=NOW - timedelta(days=10),
        expiry_date=TODAY - timedelta(days=1),
    )
    records.evidence(
        obligation_id,
        company_id,
        linked_at=NOW - timedelta(days=5),
        unlinked_at=NOW - timedelta(days=4),
    )

    (candidate,) = _detect(sqlite_session_factory, DeadlineDetector())

    assert candidate.condition_active is True
    assert candidate.resolution_at is None


def test_deadline_detector_respects_scope(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """A scope restricts candidates to one company."""
    first = records.company("First")
    second = records.company("Second")
    records.deadline(records.obligation(first), TODAY + timedelta(days=3))
    records.deadline(records.obligation(second), TODAY + timedelta(days=3))

    candidates = _detect(sqlite_session_factory, DeadlineDetector(), Scope(second))

    assert [c.scope.company_id for c in candidates] == [second]


def test_review_backlog_detector_emits_when_threshold_crossed(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Items crossing a level above their persisted level become candidates."""
    company_id = records.company()
    fresh = records.review_item(company_id=company_id, created_at=NOW - timedelta(hours=10))
    stale = records.review_item(company_id=company_id, created_at=NOW - timedelta(hours=50))

    candidates = _detect(sqlite_session_factory, ReviewBacklogDetector([48, 96, 168]))

    assert [c.item_ref.entity_id for c in candidates] == [stale]
    assert candidates[0].hours_pending == 50.0
    assert candidates[0].severity_hint == Severity.MEDIUM
    assert fresh not in [c.item_ref.entity_id for c in candidates]


def test_review_backlog_detector_skips_already_notified_level(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """An item already notified at its crossed level is not re-emitted."""
    company_id = records.company()
    item_id = records.review_item(company_id=company_id, created_at=NOW - timedelta(hours=60))
    with closing(sqlite_session_factory()) as session:
        session.add(
            EscalationState(
                entity_type=Domain.REVIEW.value,
                entity_id=item_id,
                company_id=company_id,
                escalation_level=1,
                last_notification_at=NOW - timedelta(hours=11),
                last_notification_level=1,
                window_started_at=NOW - timedelta(hours=60),
            )
        )
        session.commit()

    assert _detect(sqlite_session_factory, ReviewBacklogDetector([48, 96, 168])) == []


def test_review_backlog_detector_recovers_unnotified_level(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """A level reached without a notification is emitted again."""
    company_id = records.company()
    item_id = records.review_item(company_id=company_id, created_at=NOW - timedelta(hours=60))
    with closing(sqlite_session_factory()) as session:
        session.add(
            EscalationState(
                entity_type=Domain.REVIEW.value,
                entity_id=item_id,
                company_id=company_id,
                escalation_level=1,
                window_started_at=NOW - timedelta(hours=60),
            )
        )
        session.commit()

    candidates = _detect(sqlite_session_factory, ReviewBacklogDetector([48, 96, 168]))

    assert [c.item_ref.entity_id for c in candidates] == [item_id]


def test_review_backlog_detector_skips_items_without_company(
    sqlite_session_factory: sessionmaker,
    records,
    caplog,
) -> None:
    """Items with no resolvable company are skipped rather than failing the run."""
    orphan = records.review_item(created_at=NOW - timedelta(hours=100))
    company_id = records.company()
    obligation_id = records.obligation(company_id)
    via_obligation = records.review_item(
        obligation_id=obligation_id,
        created_at=NOW - timedelta(hours=100),
    )

    with caplog.at_level(logging.WARNING, logger="detection.review_backlog"):
        candidates = _detect(sqlite_session_factory, ReviewBacklogDetector([48, 96, 168]))

    assert [c.item_ref.entity_id for c in candidates] == [via_obligation]
    assert candidates[0].scope.company_id == company_id
    assert orphan not in [c.item_ref.entity_id for c in candidates]
    assert f"Skipping review item={orphan}: no resolvable company" in caplog.text


def test_licence_detector_tiers(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Licences get one tier per window, overdue once past expiry."""
    company_id = records.company()
    in_sixty = records.licence(company_id, TODAY + timedelta(days=45))
    expired = records.licence(company_id, TODAY - timedelta(days=1))
    records.licence(company_id, TODAY + timedelta(days=200))

    candidates = {
        c.item_ref.entity_id: c for c in _detect(sqlite_session_factory, LicenceExpiryDetector())
    }

    assert set(candidates) == {in_sixty, expired}
    assert candidates[in_sixty].tier == "60D"
    assert candidates[expired].tier == OVERDUE
    assert candidates[expired].hours_pending == 9.0


def test_licence_detector_returns_renewed_escalated_items_inactive(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """A renewed licence still escalated is returned so it can be reset."""
    company_id = records.company()
    renewed_at = NOW - timedelta(days=1)
    licence_id = records.licence(company_id, TODAY + timedelta(days=365), renewed_at=renewed_at)
    with closing(sqlite_session_factory()) as session:
        session.add(
            EscalationState(
                entity_type=Domain.LICENCE.value,
                entity_id=licence_id,
                company_id=company_id,
                escalation_level=2,
                last_notification_at=NOW - timedelta(days=3),
                last_notification_level=2,
                window_started_at=NOW - timedelta(days=20),
            )
        )
        session.commit()

    (candidate,) = _detect(sqlite_session_factory, LicenceExpiryDetector())

    assert candidate.item_ref.entity_id == licence_id
    assert candidate.tier is None
    assert candidate.condition_active is False
    assert candidate.resolution_at == renewed_at


def test_stack_test_detector_uses_next_due_date(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Generators are tiered on their next stack test date."""
    company_id = records.company()
    due_soon = records.generator(company_id, TODAY + timedelta(days=10))
    records.generator(company_id, None)
    records.generator(company_id, TODAY + timedelta(days=90))

    candidates = _detect(sqlite_session_factory, StackTestDetector())

    assert [c.item_ref.entity_id for c in candidates] == [due_soon]
    assert candidates[0].tier == "14D"
    assert candidates[0].domain_payload["identifier"] == "GEN-01"


def test_classify_gap_severity() -> None:
    """Gap severity follows days to the deadline."""
    assert classify_gap_severity(-2) == Severity.CRITICAL
    assert classify_gap_severity(3) == Severity.CRITICAL
    assert classify_gap_severity(7) == Severity.HIGH
    assert classify_gap_severity(14) == Severity.MEDIUM
    assert classify_gap_severity(20) == Severity.LOW


def test_evidence_gap_detector_one_candidate_per_obligation(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Uncovered obligations yield one candidate keyed to the earliest deadline."""
    company_id = records.company()
    missing = records.obligation(company_id, title="Missing evidence")
    first_deadline = records.deadline(missing, TODAY + timedelta(days=2))
    records.deadline(missing, TODAY + timedelta(days=20))
    expired = records.obligation(company_id, title="Expired evidence")
    records.deadline(expired, TODAY + timedelta(days=20))
    records.evidence(
        expired,
        company_id,
        linked_at=NOW - timedelta(days=300),
        expiry_date=TODAY - timedelta(days=1),
    )
    covered = records.obligation(company_id, title="Covered")
    records.deadline(covered, TODAY + timedelta(days=5))
    records.evidence(covered, company_id, linked_at=NOW - timedelta(days=1))

    candidates = {
        c.item_ref.entity_id: c for c in _detect(sqlite_session_factory, EvidenceGapDetector())
    }

    assert set(candidates) == {missing, expired}
    assert candidates[missing].domain_payload["deadline_id"] == first_deadline
    assert candidates[missing].domain_payload["gap_type"] == NO_EVIDENCE
    assert candidates[missing].severity_hint == Severity.CRITICAL
    assert candidates[missing].tier == "CRITICAL"
    assert candidates[expired].domain_payload["gap_type"] == EXPIRED_EVIDENCE
    assert candidates[expired].severity_hint == Severity.LOW
    assert candidates[expired].tier is None
