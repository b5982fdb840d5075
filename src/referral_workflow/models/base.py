"""
Database base configuration and session management.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from referral_workflow.config import get_settings


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite stores DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_engine(database_url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine, enabling foreign keys when running on SQLite."""
    if "sqlite" in database_url:
        kwargs.setdefault("connect_args", {"check_same_thread": False})

    new_engine = create_engine(database_url, echo=echo, **kwargs)

    if "sqlite" in database_url:

        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def build_session_factory(bind: Engine) -> sessionmaker:
    """
    Session factory used by every store and adapter.

    expire_on_commit is off so referrals returned from a committed
    transaction stay readable after the session closes.
    """
    return sessionmaker(
        bind=bind, autocommit=False, autoflush=False, expire_on_commit=False
    )


# Create engine with settings
settings = get_settings()
engine = build_engine(settings.database_url, echo=settings.database_echo)

# Session factory
SessionLocal = build_session_factory(engine)


def get_session() -> Generator[Session, None, None]:
    """Get a database session (generator for dependency injection)."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Initialize the database, creating all tables."""
    Base.metadata.create_all(bind=bind or engine)


def reset_db(bind: Optional[Engine] = None) -> None:
    """Drop and recreate all tables. USE WITH CAUTION."""
    Base.metadata.drop_all(bind=bind or engine)
    Base.metadata.create_all(bind=bind or engine)
