"""Database configuration and session management for the cache store."""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .core.config import settings

DATABASE_URL = settings.database_url

# Create base class for models
Base = declarative_base()


def create_db_engine(url: str) -> Engine:
    """Create an engine with database-specific tuning.

    SQLite connections are shared across the executor's worker threads, so
    ``check_same_thread`` is disabled and foreign keys are switched on for
    every new connection (SQLite defaults them to OFF, which would silently
    ignore the CASCADE constraints on cache child tables).
    """
    if url.startswith("sqlite"):
        db_engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(db_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return db_engine

    return create_engine(url, pool_pre_ping=True)


def make_session_factory(db_engine: Engine) -> sessionmaker:
    """Session factory bound to *db_engine*."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)


def init_db(db_engine: Engine) -> None:
    """Create cache tables that do not exist yet."""
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=db_engine)


engine = create_db_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)
