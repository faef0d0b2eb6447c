"""Escalation level evaluation and compare-and-set persistence."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum

from sqlalchemy import func
from sqlalchemy.orm import Session

from detection.base import highest_crossed_level
from models import EscalationHistory, EscalationState

logger = logging.getLogger(__name__)


class EscalationLevel(IntEnum):
    """Ordered escalation levels; each maps to a recipient authority band."""

    NONE = 0
    SITE = 1
    COMPANY = 2
    EXECUTIVE = 3


class TransitionAction(str, enum.Enum):
    """Outcome of evaluating one item against its thresholds."""

    ESCALATE = "ESCALATE"
    NO_CHANGE = "NO_CHANGE"
    SUPPRESSED = "SUPPRESSED"
    RESET = "RESET"


@dataclass(frozen=True)
class EscalationInput:
    """Inputs required to evaluate an escalation transition."""

    current_level: EscalationLevel
    hours_pending: float | None
    thresholds_hours: tuple[int, ...]
    resolution_at: datetime | None = None
    last_notification_at: datetime | None = None
    condition_active: bool = True


@dataclass(frozen=True)
class EscalationDecision:
    """Escalation decision output."""

    action: TransitionAction
    level: EscalationLevel
    reason: str


def evaluate_transition(inputs: EscalationInput) -> EscalationDecision:
    """Compute the next escalation level for an unresolved item.

    A resolution signal newer than the last notification holds the level,
    or resets it to NONE when the underlying condition has cleared.
    Otherwise the item moves to the highest crossed threshold when that is
    above its current level. The result depends only on the inputs.
    """
    current = inputs.current_level
    if _resolved_since_notification(inputs):
        if not inputs.condition_active and current > EscalationLevel.NONE:
            return EscalationDecision(TransitionAction.RESET, EscalationLevel.NONE, "resolved")
        return EscalationDecision(
            TransitionAction.SUPPRESSED,
            current,
            "resolution_after_notification",
        )
    if not inputs.condition_active:
        return EscalationDecision(TransitionAction.NO_CHANGE, current, "condition_inactive")

    crossed = EscalationLevel(
        min(highest_crossed_level(inputs.hours_pending, inputs.thresholds_hours), 3)
    )
    if crossed > current:
        return EscalationDecision(TransitionAction.ESCALATE, crossed, "threshold_crossed")
    return EscalationDecision(TransitionAction.NO_CHANGE, current, "below_next_threshold")


def _resolved_since_notification(inputs: EscalationInput) -> bool:
    """Return whether a resolution signal arrived after the last notification."""
    if inputs.resolution_at is None or inputs.last_notification_at is None:
        return False
    return inputs.resolution_at > inputs.last_notification_at


def current_level(state: EscalationState | None) -> EscalationLevel:
    """Return the persisted level as an EscalationLevel, defaulting to NONE."""
    if state is None:
        return EscalationLevel.NONE
    try:
        return EscalationLevel(state.escalation_level)
    except ValueError:
        logger.warning(
            "Invalid escalation level=%s for %s:%s; defaulting to NONE.",
            state.escalation_level,
            state.entity_type,
            state.entity_id,
        )
        return EscalationLevel.NONE


def notification_in_window(state: EscalationState) -> datetime | None:
    """Return the last notification time if it belongs to the current window."""
    if state.last_notification_at is None:
        return None
    if state.window_started_at is not None and state.last_notification_at < state.window_started_at:
        return None
    return state.last_notification_at


def apply_escalation(
    session: Session,
    state: EscalationState,
    new_level: EscalationLevel,
    now: datetime,
) -> bool:
    """Raise the persisted level only if it is still below ``new_level``.

    Returns False when a concurrent worker already moved the level; the
    caller skips the item for this run.
    """
    updated = (
        session.query(EscalationState)
        .filter(EscalationState.id == state.id)
        .filter(EscalationState.escalation_level < int(new_level))
        .update(
            {
                EscalationState.escalation_level: int(new_level),
                EscalationState.escalated_at: func.coalesce(EscalationState.escalated_at, now),
                EscalationState.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    session.expire(state)
    return updated == 1


def apply_reset(
    session: Session,
    state: EscalationState,
    expected_level: EscalationLevel,
    now: datetime,
) -> bool:
    """Return the level to NONE and open a new at-risk window.

    ``escalated_at`` is cleared on the live state; the history row keeps it.
    """
    updated = (
        session.query(EscalationState)
        .filter(EscalationState.id == state.id)
        .filter(EscalationState.escalation_level == int(expected_level))
        .update(
            {
                EscalationState.escalation_level: int(EscalationLevel.NONE),
                EscalationState.escalated_at: None,
                EscalationState.window_started_at: now,
                EscalationState.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    session.expire(state)
    return updated == 1


def record_history(
    session: Session,
    state: EscalationState,
    *,
    previous_level: int,
    new_level: int,
    hours_pending: float | None,
    escalated_to: list[int],
    notification_sent: bool,
    reason: str,
    escalated_at: datetime | None,
    now: datetime,
) -> EscalationHistory:
    """Append an escalation history row."""
    entry = EscalationHistory(
        entity_type=state.entity_type,
        entity_id=state.entity_id,
        previous_level=previous_level,
        new_level=new_level,
        hours_pending=round(hours_pending, 2) if hours_pending is not None else None,
        escalated_to=list(escalated_to),
        notification_sent=notification_sent,
        reason=reason,
        escalated_at=escalated_at,
        created_at=now,
    )
    session.add(entry)
    session.flush()
    return entry


def mark_notified(
    session: Session,
    state: EscalationState,
    level: int,
    now: datetime,
) -> None:
    """Record that the current level produced a notification."""
    session.query(EscalationState).filter(EscalationState.id == state.id).update(
        {
            EscalationState.last_notification_at: now,
            EscalationState.last_notification_level: level,
            EscalationState.updated_at: now,
        },
        synchronize_session=False,
    )
    session.expire(state)
