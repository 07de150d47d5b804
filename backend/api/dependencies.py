"""FastAPI dependencies"""
from functools import lru_cache
from typing import Generator

from sqlalchemy.orm import Session

from newsimpact.db.session import SessionLocal
from newsimpact.services.learning_engine import LearningEngine, build_engine


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_engine() -> LearningEngine:
    """Shared learning engine; its keyed locks must be process-wide"""
    return build_engine(SessionLocal)


def get_task_runner():
    """Process-wide job runner shared with the background scheduler"""
    from api.scheduler import task_runner

    return task_runner
