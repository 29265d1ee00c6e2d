"""Engine and session factory for the campuscal SQLite database."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from .config import settings

logger = logging.getLogger("uvicorn.error")

DATABASE_URL = f"sqlite:///{settings.database_path}"
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    future=True,
)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@contextmanager
def get_session() -> Iterator[Session]:
    """One unit of work against the calendar store.

    A series split or an approval submission done inside the block either
    lands completely or not at all; the failure is logged and re-raised.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.warning("Rolled back calendar transaction: %s", exc)
        raise
    finally:
        session.close()
