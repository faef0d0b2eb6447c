"""Shared record-store queries used by detectors and the escalation cycle."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from time_utils import ensure_aware
from models import (
    EscalationState,
    EvidenceItem,
    EvidenceStatus,
    Notification,
    NotificationStatus,
    ObligationEvidenceLink,
)

logger = logging.getLogger(__name__)

VOLUME_COUNTED_STATUSES = (
    NotificationStatus.PENDING,
    NotificationStatus.RETRYING,
    NotificationStatus.SENT,
)


def _valid_evidence_clause(today: date):
    """SQL clause for evidence links that currently satisfy an obligation."""
    return and_(
        ObligationEvidenceLink.unlinked_at.is_(None),
        EvidenceItem.status == EvidenceStatus.ACTIVE,
        or_(EvidenceItem.expiry_date.is_(None), EvidenceItem.expiry_date >= today),
    )


def obligations_with_valid_evidence(
    session: Session,
    obligation_ids: Iterable[int],
    today: date,
) -> set[int]:
    """Return the subset of obligations that have at least one valid evidence link."""
    ids = list(set(obligation_ids))
    if not ids:
        return set()
    rows = (
        session.query(ObligationEvidenceLink.obligation_id)
        .join(EvidenceItem, EvidenceItem.id == ObligationEvidenceLink.evidence_id)
        .filter(ObligationEvidenceLink.obligation_id.in_(ids))
        .filter(_valid_evidence_clause(today))
        .distinct()
        .all()
    )
    return {row[0] for row in rows}


def obligations_with_linked_evidence(
    session: Session,
    obligation_ids: Iterable[int],
) -> set[int]:
    """Return obligations with any evidence still linked, valid or expired."""
    ids = list(set(obligation_ids))
    if not ids:
        return set()
    rows = (
        session.query(ObligationEvidenceLink.obligation_id)
        .filter(ObligationEvidenceLink.obligation_id.in_(ids))
        .filter(ObligationEvidenceLink.unlinked_at.is_(None))
        .distinct()
        .all()
    )
    return {row[0] for row in rows}


def latest_valid_evidence_at(
    session: Session,
    obligation_ids: Iterable[int],
    today: date,
) -> dict[int, datetime]:
    """Return the newest valid evidence link timestamp per obligation.

    This is the resolution signal for deadline and review items.
    """
    ids = list(set(obligation_ids))
    if not ids:
        return {}
    rows = (
        session.query(
            ObligationEvidenceLink.obligation_id,
            func.max(ObligationEvidenceLink.created_at),
        )
        .join(EvidenceItem, EvidenceItem.id == ObligationEvidenceLink.evidence_id)
        .filter(ObligationEvidenceLink.obligation_id.in_(ids))
        .filter(_valid_evidence_clause(today))
        .group_by(ObligationEvidenceLink.obligation_id)
        .all()
    )
    result: dict[int, datetime] = {}
    for obligation_id, created_at in rows:
        if created_at is None:
            continue
        result[obligation_id] = ensure_aware(created_at)
    return result


def load_escalation_states(
    session: Session,
    entity_type: str,
    entity_ids: Iterable[int],
) -> dict[int, EscalationState]:
    """Load escalation states for a batch of items keyed by entity id."""
    ids = list(set(entity_ids))
    if not ids:
        return {}
    states = (
        session.query(EscalationState)
        .filter(EscalationState.entity_type == entity_type)
        .filter(EscalationState.entity_id.in_(ids))
        .all()
    )
    return {state.entity_id: state for state in states}


def get_escalation_state(
    session: Session,
    entity_type: str,
    entity_id: int,
) -> EscalationState | None:
    """Return the escalation state for one item, if it exists."""
    return (
        session.query(EscalationState)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .one_or_none()
    )


def get_or_create_escalation_state(
    session: Session,
    entity_type: str,
    entity_id: int,
    *,
    company_id: int | None,
    site_id: int | None,
    now: datetime,
    window_started_at: datetime | None = None,
) -> EscalationState:
    """Return the item's escalation state, creating it at level 0 if missing.

    Must be the first write in the current transaction: a concurrent insert
    is resolved by rolling back and reading the winner's row.
    """
    state = get_escalation_state(session, entity_type, entity_id)
    if state is not None:
        return state
    state = EscalationState(
        entity_type=entity_type,
        entity_id=entity_id,
        company_id=company_id,
        site_id=site_id,
        escalation_level=0,
        window_started_at=window_started_at or now,
        updated_at=now,
    )
    session.add(state)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        logger.info(
            "Escalation state already created concurrently: entity=%s:%s",
            entity_type,
            entity_id,
        )
        state = get_escalation_state(session, entity_type, entity_id)
        if state is None:
            raise
    return state


def latest_item_notification(
    session: Session,
    recipient_id: int,
    entity_type: str,
    entity_id: int,
    escalation_level: int,
) -> Notification | None:
    """Return the newest notification for a recipient about one item at one level."""
    return (
        session.query(Notification)
        .filter(Notification.recipient_id == recipient_id)
        .filter(Notification.entity_type == entity_type)
        .filter(Notification.entity_id == entity_id)
        .filter(Notification.escalation_level == escalation_level)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .first()
    )


def count_recent_notifications(
    session: Session,
    channel: str,
    since: datetime,
    *,
    recipient_id: int | None = None,
    company_id: int | None = None,
    exclude_id: int | None = None,
) -> int:
    """Count deliverable notifications created since a point in time.

    Narrowed to one recipient or one company when given; otherwise global.
    """
    query = (
        session.query(Notification)
        .filter(Notification.channel == channel)
        .filter(Notification.created_at >= since)
        .filter(Notification.status.in_(VOLUME_COUNTED_STATUSES))
    )
    if recipient_id is not None:
        query = query.filter(Notification.recipient_id == recipient_id)
    if company_id is not None:
        query = query.filter(Notification.company_id == company_id)
    if exclude_id is not None:
        query = query.filter(Notification.id != exclude_id)
    return query.count()


def alert_exists_since(
    session: Session,
    entity_type: str,
    entity_id: int,
    notification_type: str,
    since: datetime | None,
) -> bool:
    """Return whether an alert of this type was already created for the item."""
    query = (
        session.query(Notification.id)
        .filter(Notification.entity_type == entity_type)
        .filter(Notification.entity_id == entity_id)
        .filter(Notification.notification_type == notification_type)
    )
    if since is not None:
        query = query.filter(Notification.created_at >= since)
    return query.first() is not None
