"""Pytest configuration and fixtures.

Settings are read once at import time, so the environment is pinned before
anything from ``guestpass`` is imported.
"""

import os
import tempfile
from datetime import date, datetime, timedelta

_TEST_DIR = tempfile.mkdtemp(prefix="guestpass-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["NIGHTLY_CUTOFF"] = ""
os.environ["OVERRIDE_PASSWORD"] = "lobby-override-2024"
os.environ["KIOSK_DEGRADED_MODE"] = "false"
os.environ["BUILDING_TIMEZONE"] = "America/Los_Angeles"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from guestpass.core.security import create_access_token, hash_password
from guestpass.db.base import Base
from guestpass.db.models import Acceptance, Guest, Invitation, InvitationStatus, User, UserRole, Visit
from guestpass.db.session import SessionLocal, engine

# 11:00 building-local time (PDT) on a Tuesday.
NOW = datetime(2026, 3, 10, 18, 0, 0)
TODAY = date(2026, 3, 10)


@pytest.fixture(scope="function")
def db():
    """Fresh schema per test on the same engine the app uses."""
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def client(db: Session):
    from guestpass.main import fastapi_app

    with TestClient(fastapi_app) as test_client:
        yield test_client


@pytest.fixture
def make_user(db: Session):
    counter = {"n": 0}

    def _make(role: str = "host", full_name: str | None = None) -> User:
        counter["n"] += 1
        user = User(
            full_name=full_name or f"{role.title()} {counter['n']}",
            email=f"{role}{counter['n']}@example.com",
            password_hash=hash_password("Password123!"),
            role=UserRole(role),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def host(make_user) -> User:
    return make_user("host", "Dana Host")


@pytest.fixture
def security_user(make_user) -> User:
    return make_user("security", "Sam Security")


@pytest.fixture
def make_guest(db: Session):
    def _make(
        email: str,
        name: str = "Guest",
        accepted_at: datetime | None = NOW - timedelta(days=10),
        blacklisted: bool = False,
    ) -> Guest:
        guest = Guest(email=email, name=name, blacklisted_at=NOW - timedelta(days=1) if blacklisted else None)
        db.add(guest)
        db.flush()
        if accepted_at is not None:
            db.add(
                Acceptance(
                    guest_id=guest.id,
                    accepted_at=accepted_at,
                    terms_version="1.0",
                    agreement_version="1.0",
                )
            )
            guest.terms_accepted_at = accepted_at
        db.commit()
        db.refresh(guest)
        return guest

    return _make


@pytest.fixture
def make_invitation(db: Session):
    def _make(
        host: User,
        guest: Guest,
        status: InvitationStatus = InvitationStatus.PENDING,
        visit_date: date = TODAY,
        created_at: datetime | None = None,
    ) -> Invitation:
        invitation = Invitation(
            host_id=host.id,
            guest_id=guest.id,
            status=status,
            visit_date=visit_date,
            created_at=created_at or NOW - timedelta(hours=2),
        )
        db.add(invitation)
        db.commit()
        db.refresh(invitation)
        return invitation

    return _make


@pytest.fixture
def make_visit(db: Session):
    def _make(
        guest: Guest,
        host: User,
        checked_in_at: datetime,
        expires_at: datetime | None = None,
        checked_out_at: datetime | None = None,
    ) -> Visit:
        visit = Visit(
            guest_id=guest.id,
            host_id=host.id,
            checked_in_at=checked_in_at,
            expires_at=expires_at or checked_in_at + timedelta(hours=4),
            checked_out_at=checked_out_at,
        )
        db.add(visit)
        db.commit()
        db.refresh(visit)
        return visit

    return _make


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role.value)}"}
