"""Database configuration and base setup for GRC Sync."""

import os
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import DateTime, Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.types import TypeDecorator

from ..primitives import ensure_utc

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always reads back as UTC.

    SQLite drops tzinfo on storage; values are normalised to UTC on the way in
    and re-tagged on the way out so comparisons against remote timestamps never
    mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        return ensure_utc(value)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        return ensure_utc(value)


# Default to a local SQLite database when DATABASE_URL is not provided.
DEFAULT_DATABASE_URL = "sqlite:///./grc_sync.db"


def _ensure_sync_driver(url: URL) -> URL:
    """Force a synchronous driver for Alembic and the ORM engine."""

    if url.drivername.startswith("postgresql+"):
        # Normalize any async driver variants to psycopg (sync)
        if any(token in url.drivername for token in ("async", "aiopg")):
            url = url.set(drivername="postgresql+psycopg")
    elif url.drivername.startswith("sqlite+"):
        if "aiosqlite" in url.drivername:
            url = url.set(drivername="sqlite")

    return url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Return a database URL with a guaranteed synchronous driver."""
    from ..config import get_settings

    url = make_url(
        raw_url
        or os.getenv("DATABASE_URL")
        or get_settings().database_url
        or DEFAULT_DATABASE_URL
    )
    # render_as_string keeps the password; str(url) would mask it
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


def build_engine(database_url: str) -> Engine:
    """Create an engine configured for the given backend."""
    if database_url.startswith("sqlite"):
        # Job threads share the engine; SQLite needs cross-thread connections
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        database_url,
        pool_size=20,
        max_overflow=30,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """
    Create and cache the database engine.

    Lazy so environment variables are read at runtime rather than import time.
    """
    global _engine
    if _engine is None:
        _engine = build_engine(get_database_url())
    return _engine


def configure_engine(database_url: str) -> Engine:
    """Replace the cached engine (CLI --database-url, tests)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(_ensure_sync_driver(make_url(database_url)).render_as_string(hide_password=False))
    return _engine


def get_session_local() -> sessionmaker:
    """Get a sessionmaker bound to the current engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine(), expire_on_commit=False)


def init_database(engine: Optional[Engine] = None) -> None:
    """Initialize the database with all tables."""
    # Import all models to ensure they're registered with Base
    from . import audit_models, models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("database_initialized")
