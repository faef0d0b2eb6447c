"""Unit tests for recipient resolution by escalation level."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timezone

from sqlalchemy.orm import sessionmaker

from detection.base import Scope
from escalation.recipients import resolve_recipients
from escalation.state_machine import EscalationLevel


def _resolve(session_factory: sessionmaker, scope: Scope, level: EscalationLevel, limit=None):
    with closing(session_factory()) as session:
        return [r.user_id for r in resolve_recipients(session, scope, level, limit=limit)]


def _org(records):
    company_id = records.company()
    site_id = records.site(company_id)
    other_site = records.site(company_id, name="South Plant")
    users = {
        "site_staff": records.user(company_id, role="STAFF", site_id=site_id),
        "site_admin": records.user(company_id, role="ADMIN", site_id=site_id),
        "other_admin": records.user(company_id, role="ADMIN", site_id=other_site),
        "company_admin": records.user(company_id, role="ADMIN"),
        "owner": records.user(company_id, role="OWNER"),
        "viewer": records.user(company_id, role="VIEWER", site_id=site_id),
    }
    return company_id, site_id, users


def test_level_none_reaches_site_team(sqlite_session_factory: sessionmaker, records) -> None:
    """Level NONE reaches site staff plus company-level team members."""
    company_id, site_id, users = _org(records)

    resolved = _resolve(sqlite_session_factory, Scope(company_id, site_id), EscalationLevel.NONE)

    assert resolved == [
        users["site_staff"],
        users["site_admin"],
        users["company_admin"],
        users["owner"],
    ]


def test_site_level_reaches_site_managers(sqlite_session_factory: sessionmaker, records) -> None:
    """Level SITE reaches admins assigned to the item's site."""
    company_id, site_id, users = _org(records)

    resolved = _resolve(sqlite_session_factory, Scope(company_id, site_id), EscalationLevel.SITE)

    assert resolved == [users["site_admin"]]


def test_company_level_reaches_company_managers(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Level COMPANY reaches managers without a site assignment."""
    company_id, site_id, users = _org(records)

    resolved = _resolve(sqlite_session_factory, Scope(company_id, site_id), EscalationLevel.COMPANY)

    assert resolved == [users["company_admin"], users["owner"]]


def test_executive_level_reaches_owners(sqlite_session_factory: sessionmaker, records) -> None:
    """Level EXECUTIVE reaches owners only."""
    company_id, site_id, users = _org(records)

    resolved = _resolve(
        sqlite_session_factory, Scope(company_id, site_id), EscalationLevel.EXECUTIVE
    )

    assert resolved == [users["owner"]]


def test_inactive_and_deleted_users_excluded(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Only active, undeleted users are recipients."""
    company_id = records.company()
    records.user(company_id, role="OWNER", is_active=False, email="a@example.com")
    records.user(
        company_id,
        role="OWNER",
        email="b@example.com",
        deleted_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    active = records.user(company_id, role="OWNER", email="c@example.com")

    resolved = _resolve(sqlite_session_factory, Scope(company_id), EscalationLevel.EXECUTIVE)

    assert resolved == [active]


def test_other_company_users_never_resolved(
    sqlite_session_factory: sessionmaker,
    records,
) -> None:
    """Recipients are confined to the item's company."""
    company_id = records.company()
    other = records.company("Other")
    records.user(other, role="OWNER", email="other@example.com")

    assert _resolve(sqlite_session_factory, Scope(company_id), EscalationLevel.EXECUTIVE) == []


def test_recipient_limit_applies(sqlite_session_factory: sessionmaker, records) -> None:
    """The recipient list is capped."""
    company_id = records.company()
    ids = [records.user(company_id, role="OWNER", email=f"o{i}@example.com") for i in range(4)]

    resolved = _resolve(
        sqlite_session_factory, Scope(company_id), EscalationLevel.EXECUTIVE, limit=2
    )

    assert resolved == ids[:2]


def test_missing_company_scope_returns_empty(sqlite_session_factory: sessionmaker) -> None:
    """A scope without a company resolves nobody."""
    assert _resolve(sqlite_session_factory, Scope(None), EscalationLevel.SITE) == []
