"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata base, and helpers:
- make_engine: Engine for a database URL (SQLite gets thread-shareable connections).
- init_db: Creates the record tables; idempotent.
- session_scope: Context-managed transactional scope for imperative workflows.

The default URL is docindex.config.settings.DATABASE_URL.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from docindex.config import settings

Base = declarative_base()


def make_engine(url: Optional[str] = None) -> Engine:
    """Create an engine for `url` (defaults to settings.DATABASE_URL)."""
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, future=True)
    return create_engine(url, pool_pre_ping=True, future=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def init_db(engine: Engine) -> None:
    """Create tables from the ORM metadata. Safe to run multiple times."""
    # Import models after Base is defined
    from docindex import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Yields:
        Session: A SQLAlchemy session from `factory`.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
