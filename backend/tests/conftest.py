"""
Shared pytest fixtures for the learning engine test suite.

Each test gets its own temporary-file SQLite database, a pinned clock and a
fully wired LearningEngine over the SQL-backed article and price stores.
"""

import os
import sys
import tempfile
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import pytest

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from newsimpact.config import Settings
from newsimpact.db.repositories import NewsArticleRepository, StockPriceRepository
from newsimpact.db.session import create_db_engine, create_session_factory, init_db, session_scope
from newsimpact.services.learning_engine import LearningEngine, build_engine
from newsimpact.utils.datetime import FixedClock

# A Monday, midday UTC
T0 = datetime(2024, 3, 4, 12, 0, 0)


@pytest.fixture(scope="function")
def db_engine():
    """Temporary file database; in-memory SQLite is not shared across worker threads."""
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    temp_file.close()
    db_path = temp_file.name

    engine = create_db_engine(f"sqlite:///{db_path}")
    init_db(bind=engine)

    yield engine

    engine.dispose()
    os.unlink(db_path)


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        scheduler_enabled=False,
        aggregate_retry_wait_seconds=0,
        evaluation_max_workers=4,
    )


@pytest.fixture
def learning_engine(session_factory, clock, test_settings) -> LearningEngine:
    return build_engine(session_factory, clock=clock, config=test_settings)


class Seeder:
    """Writes articles and prices the way the ingestion side would."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def article(
        self,
        title: str,
        published_at: datetime,
        mentions: Iterable[str] = (),
        **kwargs: Any,
    ) -> int:
        with session_scope(self.session_factory) as db:
            article = NewsArticleRepository(db).create(
                mentions=list(mentions),
                title=title,
                published_at=published_at,
                **kwargs,
            )
            return article.id

    def price(self, symbol: str, price: float, recorded_at: datetime, volume: Optional[float] = None) -> None:
        with session_scope(self.session_factory) as db:
            StockPriceRepository(db).create(symbol, price, recorded_at, volume=volume)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


def make_draft(**overrides: Any) -> Dict[str, Any]:
    draft: Dict[str, Any] = {
        "article_id": 1,
        "stock_symbol": "AAPL",
        "predicted_impact": "UP",
        "predicted_change_percent": 5.5,
        "confidence": 70,
        "time_window": "1D",
        "source": "reuters",
        "category": "EARNINGS",
    }
    draft.update(overrides)
    return draft


def outcome(change_percent: float, impact: Optional[str] = None) -> Dict[str, Any]:
    if impact is None:
        impact = "UP" if change_percent > 0 else "DOWN" if change_percent < 0 else "FLAT"
    return {"actual_impact": impact, "actual_change_percent": change_percent}
