"""Database engine and session management."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import settings
from models import Base
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str | None = None, *, echo: bool | None = None) -> Engine:
    """Create an engine for the configured database.

    SQLite files get their parent directory created and foreign keys enabled,
    and connections may be shared with the worker thread.
    """
    url = url or settings.database.url
    echo = settings.database.echo if echo is None else echo
    if url.startswith("sqlite"):
        database = url.split("///", 1)[-1]
        if database and database != ":memory:":
            Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Build a session factory bound to ``engine``."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_sync_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def get_sync_session() -> Session:
    """Return a new session from the process-wide factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_sync_engine())
    return _session_factory()


def init_db(engine: Engine | None = None) -> None:
    """Create any missing tables."""
    engine = engine or get_sync_engine()
    Base.metadata.create_all(engine)
    logger.info("Database schema ready")


def check_connection(engine: Engine | None = None) -> bool:
    """Check if database connection is working."""
    engine = engine or get_sync_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def dispose_engine() -> None:
    """Dispose of the process-wide engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def storage_timestamp(session: Session, value: datetime) -> datetime:
    """Normalize a timestamp for binding, dropping the zone on SQLite.

    SQLite stores datetimes as text without an offset, so every stored value
    is UTC wall-clock time.
    """
    value = ensure_utc(value)
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return value.replace(tzinfo=None)
    return value
