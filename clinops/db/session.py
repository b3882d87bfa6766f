"""Engine and session management.

A :class:`Database` owns the SQLAlchemy engine (and therefore the connection
pool shared by every stage) plus the session factory.  It is constructed once
at startup and handed to the services that need it.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from clinops.db.config import DatabaseSettings, get_database_settings
from clinops.db.models import Base

LOGGER = logging.getLogger(__name__)


def _create_engine(settings: DatabaseSettings) -> Engine:
    engine = create_engine(settings.url, **settings.engine_options())

    if settings.is_sqlite:

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):  # type: ignore[override]
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
            finally:
                cursor.close()

    return engine


class Database:
    """Bundle of engine and session factory."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessionmaker = sessionmaker(
            bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
        )

    @classmethod
    def from_settings(cls, settings: Optional[DatabaseSettings] = None) -> "Database":
        return cls(_create_engine(settings or get_database_settings()))

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        """Create any missing tables."""

        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self._sessionmaker()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""

        session = self._sessionmaker()
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
        LOGGER.info("database_engine_disposed")
