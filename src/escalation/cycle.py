"""One detection and escalation pass for a single detector."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from detection.base import Candidate, Detector, Domain, Scope
from detection.deadline import DeadlineDetector
from detection.evidence_gap import EvidenceGapDetector
from detection.expiry import LicenceExpiryDetector, StackTestDetector
from detection.review_backlog import ReviewBacklogDetector
from escalation.digest import queue_for_digest
from escalation.notifications import alert_type, build_notification, escalation_type
from escalation.rate_limiter import (
    COOLDOWN_ACTIVE,
    VOLUME_CAP_EXCEEDED,
    RateLimitConfig,
    RateLimitInput,
    should_send_now,
)
from escalation.recipients import Recipient, resolve_recipients
from escalation.state_machine import (
    EscalationDecision,
    EscalationInput,
    EscalationLevel,
    TransitionAction,
    apply_escalation,
    apply_reset,
    current_level,
    evaluate_transition,
    mark_notified,
    notification_in_window,
    record_history,
)
from models import DigestType, EscalationState, Notification
from store import alert_exists_since, get_escalation_state, get_or_create_escalation_state
from time_utils import ensure_aware

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Counters for one cycle run."""

    domain: str
    candidates: int = 0
    alerts_created: int = 0
    escalated: int = 0
    reset: int = 0
    suppressed: int = 0
    recovered: int = 0
    notifications_created: int = 0
    deferred_to_digest: int = 0
    rate_limited: int = 0
    escalated_without_notification: int = 0
    conflicts: int = 0
    errors: int = 0
    dry_run: bool = False
    decisions: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        data = {key: value for key, value in self.__dict__.items() if key != "decisions"}
        return data


@dataclass
class _NotifyOutcome:
    created: list[Notification] = field(default_factory=list)
    deferred: int = 0
    rate_limited: int = 0


def build_detector(domain: Domain | str) -> Detector:
    """Return the configured detector for a domain."""
    domain = Domain(domain)
    if domain == Domain.DEADLINE:
        return DeadlineDetector()
    if domain == Domain.REVIEW:
        return ReviewBacklogDetector()
    if domain == Domain.LICENCE:
        return LicenceExpiryDetector()
    if domain == Domain.STACK_TEST:
        return StackTestDetector()
    return EvidenceGapDetector()


def thresholds_for(domain: Domain) -> tuple[int, ...]:
    """Return the escalation thresholds configured for a domain."""
    return tuple(settings.escalation.thresholds_hours.get(Domain(domain).value, []))


class EscalationCycle:
    """Runs a detector and drives each candidate through alerts and escalation.

    Every decision is derived from persisted rows, so overlapping or repeated
    runs converge on the same result. Each candidate is processed in its own
    transaction; a failure is logged and counted without aborting the run.
    """

    def __init__(
        self,
        *,
        detector: Detector,
        session_factory: Callable[[], Session],
        thresholds_hours: Sequence[int] | None = None,
        rate_limit_config: RateLimitConfig | None = None,
        max_recipients: int | None = None,
    ) -> None:
        self._detector = detector
        self._session_factory = session_factory
        if thresholds_hours is None:
            thresholds_hours = thresholds_for(detector.domain)
        self._thresholds = tuple(thresholds_hours)
        self._rate_limit = rate_limit_config or RateLimitConfig.from_settings()
        self._max_recipients = max_recipients or settings.escalation.max_recipients

    @property
    def domain(self) -> Domain:
        return self._detector.domain

    def run(
        self,
        now: datetime,
        scope: Scope | None = None,
        *,
        dry_run: bool = False,
        progress: Callable[[], None] | None = None,
    ) -> CycleResult:
        """Detect candidates at ``now`` and process each one.

        ``progress`` is called after every candidate.
        """
        now = ensure_aware(now)
        result = CycleResult(domain=self.domain.value, dry_run=dry_run)
        with closing(self._session_factory()) as session:
            candidates = self._detector.detect(session, now, scope)
        result.candidates = len(candidates)

        for candidate in candidates:
            with closing(self._session_factory()) as session:
                try:
                    self._process_candidate(session, candidate, now, result, dry_run)
                except Exception:
                    session.rollback()
                    result.errors += 1
                    logger.exception("Escalation cycle failed for item=%s", candidate.item_ref)
            if progress is not None:
                progress()

        logger.info(
            "Escalation cycle completed: domain=%s candidates=%s alerts=%s escalated=%s "
            "reset=%s suppressed=%s recovered=%s notifications=%s deferred=%s "
            "rate_limited=%s conflicts=%s errors=%s dry_run=%s",
            result.domain,
            result.candidates,
            result.alerts_created,
            result.escalated,
            result.reset,
            result.suppressed,
            result.recovered,
            result.notifications_created,
            result.deferred_to_digest,
            result.rate_limited,
            result.conflicts,
            result.errors,
            dry_run,
        )
        return result

    def _process_candidate(
        self,
        session: Session,
        candidate: Candidate,
        now: datetime,
        result: CycleResult,
        dry_run: bool,
    ) -> None:
        self._tier_alert(session, candidate, now, result, dry_run)

        entity_type = candidate.item_ref.domain.value
        entity_id = candidate.item_ref.entity_id
        state = get_escalation_state(session, entity_type, entity_id)
        if state is None and candidate.hours_pending is None:
            result.decisions[str(candidate.item_ref)] = TransitionAction.NO_CHANGE.value
            return

        level = current_level(state)
        decision = evaluate_transition(
            EscalationInput(
                current_level=level,
                hours_pending=candidate.hours_pending,
                thresholds_hours=self._thresholds,
                resolution_at=candidate.resolution_at,
                last_notification_at=notification_in_window(state) if state else None,
                condition_active=candidate.condition_active,
            )
        )
        result.decisions[str(candidate.item_ref)] = decision.action.value
        if dry_run:
            self._count_dry_run(decision, result)
            return

        if decision.action == TransitionAction.SUPPRESSED:
            result.suppressed += 1
            logger.info(
                "Escalation suppressed for item=%s at level=%s: %s",
                candidate.item_ref,
                int(level),
                decision.reason,
            )
            return

        if state is None:
            if decision.action != TransitionAction.ESCALATE:
                return
            state = get_or_create_escalation_state(
                session,
                entity_type,
                entity_id,
                company_id=candidate.scope.company_id,
                site_id=candidate.scope.site_id,
                now=now,
                window_started_at=candidate.reference_time,
            )
            session.commit()

        if decision.action == TransitionAction.ESCALATE:
            self._escalate(session, candidate, state, level, decision, now, result)
        elif decision.action == TransitionAction.RESET:
            self._reset(session, candidate, state, level, decision, now, result)
        elif (
            decision.reason == "below_next_threshold"
            and level > EscalationLevel.NONE
            and state.last_notification_level != int(level)
        ):
            self._recover(session, candidate, state, level, now, result)

    def _tier_alert(
        self,
        session: Session,
        candidate: Candidate,
        now: datetime,
        result: CycleResult,
        dry_run: bool,
    ) -> None:
        """Notify the level-0 band once per tier while the condition holds."""
        if candidate.tier is None or not candidate.condition_active:
            return
        notification_type = alert_type(candidate)
        if alert_exists_since(
            session,
            candidate.item_ref.domain.value,
            candidate.item_ref.entity_id,
            notification_type,
            candidate.tier_period_start,
        ):
            return
        if dry_run:
            result.alerts_created += 1
            return

        recipients = resolve_recipients(
            session, candidate.scope, EscalationLevel.NONE, limit=self._max_recipients
        )
        outcome = self._notify(session, candidate, recipients, notification_type, 0, now)
        session.commit()
        if outcome.created:
            result.alerts_created += 1
        self._count_notify(outcome, result)

    def _escalate(
        self,
        session: Session,
        candidate: Candidate,
        state: EscalationState,
        previous: EscalationLevel,
        decision: EscalationDecision,
        now: datetime,
        result: CycleResult,
    ) -> None:
        new_level = decision.level
        if not apply_escalation(session, state, new_level, now):
            session.rollback()
            result.conflicts += 1
            logger.info(
                "Escalation skipped for item=%s: level changed concurrently", candidate.item_ref
            )
            return

        recipients = resolve_recipients(
            session, candidate.scope, new_level, limit=self._max_recipients
        )
        notification_type = escalation_type(candidate, int(new_level))
        try:
            outcome = self._notify(
                session, candidate, recipients, notification_type, int(new_level), now
            )
            if outcome.created:
                mark_notified(session, state, int(new_level), now)
            record_history(
                session,
                state,
                previous_level=int(previous),
                new_level=int(new_level),
                hours_pending=candidate.hours_pending,
                escalated_to=[n.recipient_id for n in outcome.created],
                notification_sent=bool(outcome.created),
                reason=decision.reason,
                escalated_at=now,
                now=now,
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception(
                "Escalation notifications failed for item=%s; recording level without them",
                candidate.item_ref,
            )
            outcome = _NotifyOutcome()
            if not apply_escalation(session, state, new_level, now):
                session.rollback()
                result.conflicts += 1
                return
            record_history(
                session,
                state,
                previous_level=int(previous),
                new_level=int(new_level),
                hours_pending=candidate.hours_pending,
                escalated_to=[],
                notification_sent=False,
                reason="notification_failed",
                escalated_at=now,
                now=now,
            )
            session.commit()

        result.escalated += 1
        self._count_notify(outcome, result)
        if not outcome.created:
            result.escalated_without_notification += 1
        logger.info(
            "Escalated item=%s from level=%s to level=%s hours_pending=%s recipients=%s",
            candidate.item_ref,
            int(previous),
            int(new_level),
            candidate.hours_pending,
            len(outcome.created),
        )

    def _reset(
        self,
        session: Session,
        candidate: Candidate,
        state: EscalationState,
        previous: EscalationLevel,
        decision: EscalationDecision,
        now: datetime,
        result: CycleResult,
    ) -> None:
        escalated_at = state.escalated_at
        if not apply_reset(session, state, previous, now):
            session.rollback()
            result.conflicts += 1
            return
        record_history(
            session,
            state,
            previous_level=int(previous),
            new_level=int(EscalationLevel.NONE),
            hours_pending=candidate.hours_pending,
            escalated_to=[],
            notification_sent=False,
            reason=decision.reason,
            escalated_at=escalated_at,
            now=now,
        )
        session.commit()
        result.reset += 1
        logger.info("Escalation reset for item=%s from level=%s", candidate.item_ref, int(previous))

    def _recover(
        self,
        session: Session,
        candidate: Candidate,
        state: EscalationState,
        level: EscalationLevel,
        now: datetime,
        result: CycleResult,
    ) -> None:
        """Emit the notification missing for an already reached level."""
        recipients = resolve_recipients(session, candidate.scope, level, limit=self._max_recipients)
        outcome = self._notify(
            session, candidate, recipients, escalation_type(candidate, int(level)), int(level), now
        )
        if outcome.created:
            mark_notified(session, state, int(level), now)
            result.recovered += 1
        session.commit()
        self._count_notify(outcome, result)

    def _notify(
        self,
        session: Session,
        candidate: Candidate,
        recipients: list[Recipient],
        notification_type: str,
        level: int,
        now: datetime,
    ) -> _NotifyOutcome:
        """Create one notification per recipient that passes the rate limiter."""
        outcome = _NotifyOutcome()
        for recipient in recipients:
            decision = should_send_now(
                session,
                RateLimitInput(
                    recipient_id=recipient.user_id,
                    notification_type=notification_type,
                    timestamp=now,
                    entity_type=candidate.item_ref.domain.value,
                    entity_id=candidate.item_ref.entity_id,
                    escalation_level=level,
                    company_id=candidate.scope.company_id,
                ),
                self._rate_limit,
            )
            if decision.reason == COOLDOWN_ACTIVE:
                outcome.rate_limited += 1
                continue
            notification = build_notification(
                candidate,
                recipient,
                notification_type=notification_type,
                level=level,
                now=now,
                channel=self._rate_limit.channel,
            )
            if decision.reason == VOLUME_CAP_EXCEEDED:
                queue_for_digest(notification, DigestType.DAILY, now, reason=VOLUME_CAP_EXCEEDED)
                outcome.deferred += 1
            session.add(notification)
            session.flush()
            outcome.created.append(notification)
        return outcome

    @staticmethod
    def _count_notify(outcome: _NotifyOutcome, result: CycleResult) -> None:
        result.notifications_created += len(outcome.created)
        result.deferred_to_digest += outcome.deferred
        result.rate_limited += outcome.rate_limited

    @staticmethod
    def _count_dry_run(decision: EscalationDecision, result: CycleResult) -> None:
        if decision.action == TransitionAction.ESCALATE:
            result.escalated += 1
        elif decision.action == TransitionAction.RESET:
            result.reset += 1
        elif decision.action == TransitionAction.SUPPRESSED:
            result.suppressed += 1


def run_cycle(
    domain: Domain | str,
    *,
    session_factory: Callable[[], Session],
    now: datetime,
    scope: Scope | None = None,
    dry_run: bool = False,
    progress: Callable[[], None] | None = None,
) -> CycleResult:
    """Build the detector for ``domain`` and run one cycle."""
    cycle = EscalationCycle(detector=build_detector(domain), session_factory=session_factory)
    return cycle.run(now, scope, dry_run=dry_run, progress=progress)
