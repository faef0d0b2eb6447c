"""Pytest configuration for the alerting engine test suite."""

import os
import sys
from collections.abc import Generator
from contextlib import closing
from datetime import date, datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("EMAIL_API_KEY", "test-key")
    os.environ.setdefault("APP_URL", "https://app.example.test")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))


@pytest.fixture()
def sqlite_session_factory() -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory and ensure engine cleanup."""
    from models import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


class RecordFactory:
    """Insert record-store rows with sensible defaults and return their ids."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _add(self, row):
        with closing(self._session_factory()) as session:
            session.add(row)
            session.commit()
            return row.id

    def company(self, name: str = "Acme Energy") -> int:
        from models import Company

        return self._add(Company(name=name))

    def site(self, company_id: int, name: str = "North Plant") -> int:
        from models import Site

        return self._add(Site(company_id=company_id, name=name))

    def user(
        self,
        company_id: int,
        *,
        role: str = "ADMIN",
        site_id: int | None = None,
        email: str | None = None,
        is_active: bool = True,
        deleted_at: datetime | None = None,
    ) -> int:
        from models import User, UserRole

        return self._add(
            User(
                company_id=company_id,
                site_id=site_id,
                email=email if email is not None else f"{role.lower()}-{site_id}@example.com",
                full_name=role.title(),
                role=UserRole(role),
                is_active=is_active,
                deleted_at=deleted_at,
            )
        )

    def preference(self, user_id: int, frequency: str, notification_type: str = "*") -> int:
        from models import DeliveryFrequency, NotificationPreference

        return self._add(
            NotificationPreference(
                user_id=user_id,
                notification_type=notification_type,
                frequency=DeliveryFrequency(frequency),
            )
        )

    def obligation(self, company_id: int, site_id: int | None = None, title: str = "Annual return") -> int:
        from models import Obligation

        return self._add(Obligation(company_id=company_id, site_id=site_id, title=title))

    def deadline(self, obligation_id: int, due_date: date, status: str = "PENDING") -> int:
        from models import Deadline, DeadlineStatus

        return self._add(
            Deadline(obligation_id=obligation_id, due_date=due_date, status=DeadlineStatus(status))
        )

    def evidence(
        self,
        obligation_id: int,
        company_id: int,
        *,
        linked_at: datetime,
        expiry_date: date | None = None,
        status: str = "ACTIVE",
        unlinked_at: datetime | None = None,
    ) -> int:
        from models import EvidenceItem, EvidenceStatus, ObligationEvidenceLink

        evidence_id = self._add(
            EvidenceItem(
                company_id=company_id,
                title="Evidence",
                status=EvidenceStatus(status),
                expiry_date=expiry_date,
            )
        )
        return self._add(
            ObligationEvidenceLink(
                obligation_id=obligation_id,
                evidence_id=evidence_id,
                created_at=linked_at,
                unlinked_at=unlinked_at,
            )
        )

    def review_item(
        self,
        *,
        created_at: datetime,
        company_id: int | None = None,
        site_id: int | None = None,
        obligation_id: int | None = None,
        review_type: str = "EXTRACTION",
    ) -> int:
        from models import ReviewQueueItem, ReviewStatus

        return self._add(
            ReviewQueueItem(
                company_id=company_id,
                site_id=site_id,
                obligation_id=obligation_id,
                review_type=review_type,
                review_status=ReviewStatus.PENDING,
                created_at=created_at,
            )
        )

    def licence(
        self,
        company_id: int,
        expiry_date: date,
        *,
        site_id: int | None = None,
        renewed_at: datetime | None = None,
    ) -> int:
        from models import ContractorLicence

        return self._add(
            ContractorLicence(
                company_id=company_id,
                site_id=site_id,
                contractor_name="Sparks Electrical",
                licence_number="EL-1001",
                expiry_date=expiry_date,
                renewed_at=renewed_at,
            )
        )

    def generator(
        self,
        company_id: int,
        next_due: date | None,
        *,
        site_id: int | None = None,
        last_test_completed_at: datetime | None = None,
    ) -> int:
        from models import Generator

        return self._add(
            Generator(
                company_id=company_id,
                site_id=site_id,
                identifier="GEN-01",
                next_stack_test_due=next_due,
                last_test_completed_at=last_test_completed_at,
            )
        )

    def notification(self, recipient_id: int, *, created_at: datetime, **overrides) -> int:
        from models import Notification, NotificationStatus

        values = {
            "recipient_id": recipient_id,
            "recipient_address": f"user-{recipient_id}@example.com",
            "notification_type": "DEADLINE_7D",
            "channel": "EMAIL",
            "priority": 2,
            "subject": "Subject",
            "body": "Body",
            "status": NotificationStatus.PENDING,
            "scheduled_for": created_at,
            "created_at": created_at,
            "retry_count": 0,
            "meta": {},
        }
        values.update(overrides)
        return self._add(Notification(**values))


@pytest.fixture()
def records(sqlite_session_factory: sessionmaker) -> RecordFactory:
    """Provide a record factory bound to the sqlite session factory."""
    return RecordFactory(sqlite_session_factory)


class RecordingChannel:
    """Channel stub that records sends and raises queued errors in order."""

    provider_name = "TEST"

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.sent: list[dict[str, object]] = []

    def send(self, recipient_address: str, subject: str, body: str, priority: int) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(
            {
                "recipient_address": recipient_address,
                "subject": subject,
                "body": body,
                "priority": priority,
            }
        )
        return f"msg-{len(self.sent)}"


@pytest.fixture()
def recording_channel() -> RecordingChannel:
    """Provide a channel stub that succeeds unless errors are queued."""
    return RecordingChannel()
