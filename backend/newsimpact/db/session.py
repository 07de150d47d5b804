"""
Database session management with SQLAlchemy 2.0.

Provides engine configuration, session creation and context managers
for safe database access with automatic transaction rollback.
"""

from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from loguru import logger

from newsimpact.config import settings


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine suited to the backing database.

    SQLite connections are shared across the evaluation worker threads and
    wait on write locks instead of failing immediately.
    """
    kwargs: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}

    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs.update(
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
        )

    return create_engine(database_url, **kwargs)


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Rows are handed to callers after commit
    )


engine = create_db_engine(settings.database_url, echo=settings.debug)

SessionLocal = create_session_factory(engine)


def init_db(bind: Engine = None) -> None:
    """Create all tables. Idempotent."""
    from newsimpact.db.models import Base

    Base.metadata.create_all(bind=bind or engine, checkfirst=True)
    logger.info("Database schema initialized")


def get_db() -> Session:
    """
    Get a database session.

    Caller is responsible for closing it, or should use get_db_context().
    """
    return SessionLocal()


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    One unit of work: commit on success, roll back and re-raise on failure.

    Usage:
        with session_scope(SessionLocal) as db:
            db.add(row)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Get a session bound to the application engine as a context manager.

    The session is committed on success and rolled back on error.
    """
    with session_scope(SessionLocal) as db:
        yield db
