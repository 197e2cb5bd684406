"""
Database connection and session management for MedTrack Engine
"""

import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Generator

from config import settings


logger = logging.getLogger(__name__)


def make_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an engine for the event store

    SQLite runs on a single shared connection with foreign keys enforced,
    so the archival sweep and the API see the same rows. Other backends
    get a pre-pinged connection pool.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_size=10, max_overflow=20, pool_pre_ping=True)

    sqlite_engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=echo
    )

    @event.listens_for(sqlite_engine, "connect")
    def enforce_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return sqlite_engine


engine = make_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for commands, revisions, events and summaries
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Request-scoped session for API routes
    Routes commit through the services; the session is only closed here.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Session for service calls made without a request, such as the daily
    reset workers and missed dose detection. Commits on exit, rolls back
    on any error.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """Create the event store tables"""
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Event store initialized at: {settings.DATABASE_URL}")


class DatabaseHealthCheck:
    """Database health check utilities"""

    @staticmethod
    def is_connected() -> bool:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.warning("Database health check failed", exc_info=True)
            return False

    @staticmethod
    def backend() -> str:
        return engine.dialect.name


__all__ = [
    "engine",
    "make_engine",
    "SessionLocal",
    "Base",
    "get_db",
    "get_db_context",
    "init_db",
    "DatabaseHealthCheck"
]
