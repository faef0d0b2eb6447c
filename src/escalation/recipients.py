"""Map escalation levels and organizational scope to recipients."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from config import settings
from detection.base import Scope
from escalation.state_machine import EscalationLevel
from models import User, UserRole

logger = logging.getLogger(__name__)

SITE_TEAM_ROLES = (UserRole.OWNER, UserRole.ADMIN, UserRole.STAFF)
MANAGER_ROLES = (UserRole.OWNER, UserRole.ADMIN)


@dataclass(frozen=True)
class Recipient:
    """Resolved notification recipient."""

    user_id: int
    email: str
    role: str


def resolve_recipients(
    session: Session,
    scope: Scope,
    level: EscalationLevel,
    *,
    limit: int | None = None,
) -> list[Recipient]:
    """Return active users in the role band for ``level`` within ``scope``.

    Level NONE reaches the site team, SITE reaches site managers, COMPANY
    reaches company-level managers, and EXECUTIVE reaches owners. An empty
    list is a valid result.
    """
    if scope.company_id is None:
        logger.warning("Cannot resolve recipients without a company scope.")
        return []
    limit = limit or settings.escalation.max_recipients

    query = (
        session.query(User)
        .filter(User.company_id == scope.company_id)
        .filter(User.is_active.is_(True))
        .filter(User.deleted_at.is_(None))
        .filter(User.email.isnot(None))
    )
    if level == EscalationLevel.NONE:
        query = query.filter(User.role.in_(SITE_TEAM_ROLES))
        query = _site_or_company_level(query, scope)
    elif level == EscalationLevel.SITE:
        query = query.filter(User.role.in_(MANAGER_ROLES))
        if scope.site_id is not None:
            query = query.filter(User.site_id == scope.site_id)
        else:
            query = query.filter(User.site_id.is_(None))
    elif level == EscalationLevel.COMPANY:
        query = query.filter(User.role.in_(MANAGER_ROLES)).filter(User.site_id.is_(None))
    else:
        query = query.filter(User.role == UserRole.OWNER)

    users = query.order_by(User.id.asc()).limit(limit).all()
    if not users:
        logger.info(
            "No recipients for level=%s company=%s site=%s",
            int(level),
            scope.company_id,
            scope.site_id,
        )
    return [
        Recipient(user_id=user.id, email=user.email, role=UserRole(user.role).value)
        for user in users
    ]


def _site_or_company_level(query, scope: Scope):
    if scope.site_id is None:
        return query.filter(User.site_id.is_(None))
    return query.filter((User.site_id == scope.site_id) | User.site_id.is_(None))
