"""Shared pytest fixtures for campuscal."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from campuscal import api, database, storage
from campuscal.crud import create_calendar
from campuscal.models import Base
from campuscal.service import create_event


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    storage.get_session = database.get_session
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture()
def calendar(session):
    return create_calendar(session, name="Campus Life")


@pytest.fixture()
def weekly_series(session, calendar):
    """Mondays 10:00-11:00 UTC starting 2025-01-06."""
    return create_event(
        session,
        calendar_id=calendar.id,
        title="Standup",
        start_time=datetime(2025, 1, 6, 10, 0),
        end_time=datetime(2025, 1, 6, 11, 0),
        timezone="UTC",
        rrule="FREQ=WEEKLY;BYDAY=MO",
        created_by_id="user-1",
    )
