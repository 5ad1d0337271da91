from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import importlib

fastapi_app = importlib.import_module("calcrm.main").app
from calcrm.core.config import settings
from calcrm.db.base import Base
from calcrm.db.session import get_db
from calcrm.models.profile import Profile
from calcrm.services.identity_service import Principal

# Ensure all models are registered with SQLAlchemy metadata
import calcrm.models  # noqa: F401


class FakeClock:
    """Settable naive-UTC clock shared by services and client objects."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(engine, session_factory):
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(db_session, session_factory, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_MODE", "legacy_header")
    monkeypatch.setattr(settings, "SWEEPER_ENABLED", False)

    def _override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    with TestClient(fastapi_app) as test_client:
        yield test_client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def profiles(db_session):
    rows = [
        Profile(id="user-a", email="alice@example.com", full_name="Alice Archer", role="staff"),
        Profile(id="user-b", email="bob@example.com", full_name="Bob Baker", role="staff"),
        Profile(id="user-c", email="carol@example.com", full_name=None, role="client"),
        Profile(
            id="user-x",
            email="former@example.com",
            full_name="Former Employee",
            role="staff",
            is_active=False,
        ),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {row.id: row for row in rows}


@pytest.fixture
def alice(profiles) -> Principal:
    return Principal(user_id="user-a", display_name="Alice Archer", email="alice@example.com", role="staff")


@pytest.fixture
def bob(profiles) -> Principal:
    return Principal(user_id="user-b", display_name="Bob Baker", email="bob@example.com", role="staff")
