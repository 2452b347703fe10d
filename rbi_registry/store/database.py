"""
Database handle — engine and session factory with an explicit lifetime.

Services receive a ``Database`` instead of reaching for a module-level
client, so each job run or request scope owns its connections.

Usage:
    db = Database(settings.database_url_sync)
    db.initialize()  # Create tables

    with db.session() as session:
        ...
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from rbi_registry.store.models import Base

logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for ``database_url``.

    SQLite connections get foreign-key enforcement and may be shared across
    threads; an in-memory SQLite database uses a single static connection so
    every session sees the same data.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if _is_memory_sqlite(database_url):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


class Database:
    """Owns an engine and hands out short-lived sessions."""

    def __init__(self, database_url: str | None = None, engine: Engine | None = None) -> None:
        if engine is None:
            if database_url is None:
                raise ValueError("Either database_url or engine is required")
            engine = create_db_engine(database_url)
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        """Create all registry tables that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Registry schema ready on %s", self.engine.url.render_as_string())

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Transactional session scope.

        Commits on normal exit, rolls back and re-raises on error.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
