"""
Article, price and entity-extraction collaborators.

The learning engine depends only on the Protocols below. The Sql*
implementations read the `news_articles`, `stock_mentions` and
`stock_prices` tables populated by the ingestion side of the system.
"""

from collections import Counter
from datetime import datetime
from itertools import groupby
from typing import Dict, List, Optional, Protocol

from loguru import logger
from sqlalchemy.orm import sessionmaker

from newsimpact.db.models import NewsArticle
from newsimpact.db.repositories import NewsArticleRepository, StockPriceRepository
from newsimpact.db.session import session_scope
from newsimpact.domain.market import ArticleSummary, ArticleWindowStats, PricePoint, PriceMovement
from newsimpact.domain.predictions import UNKNOWN_CATEGORY, sentiment_bucket

PROCESSED_STATUS = "PROCESSED"


class ArticleStore(Protocol):
    def find_articles_in_window(
        self, symbol: Optional[str], start: datetime, end: datetime
    ) -> List[ArticleSummary]:
        ...

    def summarize_window(self, start: datetime, end: datetime) -> ArticleWindowStats:
        ...


class PriceStore(Protocol):
    def find_price_change(self, symbol: str, start: datetime, end: datetime) -> Optional[float]:
        ...

    def find_price_movements(
        self,
        start: datetime,
        end: datetime,
        threshold: float,
        symbol: Optional[str] = None,
    ) -> List[PriceMovement]:
        ...

    def find_price_series(self, start: datetime, end: datetime) -> Dict[str, List[PricePoint]]:
        ...


class EntityExtractor(Protocol):
    def has_stock_mention(self, article_id: int, symbol: str) -> bool:
        ...


def _to_summary(article: NewsArticle) -> ArticleSummary:
    return ArticleSummary(
        id=article.id,
        title=article.title,
        published_at=article.published_at,
        source=article.source,
        category=article.category,
        sentiment_score=article.sentiment_score,
        impact_level=article.impact_level,
        status=article.status,
    )


def percent_change(start_price: float, end_price: float) -> Optional[float]:
    """Percent move between two prices; None when the base price is not positive."""
    if start_price is None or end_price is None or start_price <= 0:
        return None
    return (end_price - start_price) / start_price * 100


def series_changes(series: Dict[str, List[PricePoint]]) -> Dict[str, float]:
    """First-vs-last percent change per symbol with at least two observations."""
    changes = {}
    for symbol, points in series.items():
        if len(points) < 2:
            continue
        change = percent_change(points[0].price, points[-1].price)
        if change is not None:
            changes[symbol] = change
    return changes


class SqlArticleStore:
    """ArticleStore over `news_articles` / `stock_mentions`."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def find_articles_in_window(
        self, symbol: Optional[str], start: datetime, end: datetime
    ) -> List[ArticleSummary]:
        with session_scope(self.session_factory) as db:
            articles = NewsArticleRepository(db).find_in_window(start, end, symbol=symbol)
            return [_to_summary(a) for a in articles]

    def summarize_window(self, start: datetime, end: datetime) -> ArticleWindowStats:
        """Category, sentiment and processing counts for articles published in [start, end)."""
        with session_scope(self.session_factory) as db:
            articles = NewsArticleRepository(db).find_published_between(start, end)
            categories = Counter(a.category or UNKNOWN_CATEGORY for a in articles)
            sentiment = Counter(
                sentiment_bucket(a.sentiment_score) for a in articles if a.sentiment_score is not None
            )
            processed = sum(1 for a in articles if a.status == PROCESSED_STATUS)

        return ArticleWindowStats(
            total_articles=len(articles),
            processed_articles=processed,
            categories=dict(sorted(categories.items())),
            sentiment_distribution={bucket: sentiment.get(bucket, 0) for bucket in ("POSITIVE", "NEGATIVE", "NEUTRAL")},
        )


class SqlEntityExtractor:
    """EntityExtractor answered from mentions already extracted at ingestion."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def has_stock_mention(self, article_id: int, symbol: str) -> bool:
        with session_scope(self.session_factory) as db:
            return NewsArticleRepository(db).has_mention(article_id, symbol)


class SqlPriceStore:
    """PriceStore over `stock_prices`."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def find_price_change(self, symbol: str, start: datetime, end: datetime) -> Optional[float]:
        """
        Percent change from the price at `start` to the first price at or after `end`.

        The base is the last observation at or before `start`, falling back to
        the first one after it. Returns None while no price at or after `end`
        has been recorded.
        """
        with session_scope(self.session_factory) as db:
            repo = StockPriceRepository(db)

            final = repo.first_at_or_after(symbol, end)
            if final is None:
                return None

            base = repo.last_at_or_before(symbol, start) or repo.first_at_or_after(symbol, start)
            if base is None:
                return None

            return percent_change(base.price, final.price)

    def find_price_movements(
        self,
        start: datetime,
        end: datetime,
        threshold: float,
        symbol: Optional[str] = None,
    ) -> List[PriceMovement]:
        """First-vs-last price move per symbol in [start, end], material moves only, largest first."""
        movements: List[PriceMovement] = []

        with session_scope(self.session_factory) as db:
            repo = StockPriceRepository(db)
            symbols = [symbol.upper()] if symbol else repo.symbols_between(start, end)

            for sym in symbols:
                prices = repo.find_between(sym, start, end)
                if len(prices) < 2:
                    continue

                change = percent_change(prices[0].price, prices[-1].price)
                if change is None or abs(change) < threshold:
                    continue

                movements.append(
                    PriceMovement(
                        stock_symbol=sym,
                        movement_percent=round(change, 4),
                        start_time=prices[0].recorded_at,
                        end_time=prices[-1].recorded_at,
                    )
                )

        movements.sort(key=lambda m: abs(m.movement_percent), reverse=True)
        logger.debug(f"Found {len(movements)} material price movements between {start} and {end}")
        return movements

    def find_price_series(self, start: datetime, end: datetime) -> Dict[str, List[PricePoint]]:
        """Observations in [start, end) per symbol, oldest first."""
        with session_scope(self.session_factory) as db:
            rows = StockPriceRepository(db).find_all_between(start, end)
            return {
                symbol: [PricePoint(r.recorded_at, r.price, r.volume) for r in group]
                for symbol, group in groupby(rows, key=lambda r: r.stock_symbol)
            }
