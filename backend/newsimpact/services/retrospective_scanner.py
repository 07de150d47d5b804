"""
Retrospective scanner: was a material price move covered by a prediction?

For each movement the preceding window [start - lookback, start] is searched
for predictions on the symbol and for news about it. An uncovered move is
a missed opportunity, explained by the first matching row of the
missed-reason table. Results are append-only; a repeat scan of the same
movement is rejected with DuplicateAnalysisError.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from newsimpact.db.models import Prediction, RetrospectiveAnalysis
from newsimpact.db.repositories import PredictionRepository, RetrospectiveAnalysisRepository
from newsimpact.db.session import session_scope
from newsimpact.domain.market import ArticleSummary, PriceMovement
from newsimpact.domain.missed_reasons import (
    MISSED_REASON_TABLE,
    MissContext,
    MissedReasonRule,
    classify_missed_reason,
)
from newsimpact.domain.predictions import direction_of_move
from newsimpact.services.market_data import ArticleStore, EntityExtractor, PriceStore
from newsimpact.utils.datetime import Clock, SystemClock
from newsimpact.utils.errors import DuplicateAnalysisError, IdempotencyGuardError, ValidationError


def retrospective_accuracy(predictions: Sequence[Prediction], movement_percent: float) -> float:
    """
    Mean per-prediction score against the realized move.

    A prediction pointing the way the price went scores 100; one pointing
    the other way scores 100 scaled down by its confidence.
    """
    if not predictions:
        return 0.0

    actual = direction_of_move(movement_percent).value
    scores = []
    for p in predictions:
        if p.predicted_impact == actual:
            scores.append(100.0)
        else:
            scores.append(100.0 * (1 - p.confidence / 100.0))
    return sum(scores) / len(scores)


class RetrospectiveScanner:
    def __init__(
        self,
        session_factory: sessionmaker,
        article_store: ArticleStore,
        entity_extractor: Optional[EntityExtractor] = None,
        price_store: Optional[PriceStore] = None,
        clock: Optional[Clock] = None,
        materiality_threshold: float = 5.0,
        lookback_hours: int = 48,
        reason_table: Sequence[MissedReasonRule] = MISSED_REASON_TABLE,
    ):
        self.session_factory = session_factory
        self.article_store = article_store
        self.entity_extractor = entity_extractor
        self.price_store = price_store
        self.clock = clock or SystemClock()
        self.materiality_threshold = materiality_threshold
        self.lookback = timedelta(hours=lookback_hours)
        self.reason_table = reason_table

    def scan(self, movement: PriceMovement) -> RetrospectiveAnalysis:
        """
        Analyze one material movement and persist the result.

        Raises:
            ValidationError: |movement_percent| below the materiality threshold
            DuplicateAnalysisError: movement already analyzed
        """
        if abs(movement.movement_percent) < self.materiality_threshold:
            raise ValidationError(
                f"Movement of {movement.movement_percent:+.2f}% for {movement.stock_symbol} is below "
                f"the {self.materiality_threshold}% materiality threshold",
                details={"stock_symbol": movement.stock_symbol, "movement_percent": movement.movement_percent},
            )

        symbol = movement.stock_symbol
        analysis_date = movement.resolved_analysis_date
        window_start = movement.start_time - self.lookback
        window_end = movement.start_time

        with session_scope(self.session_factory) as db:
            if RetrospectiveAnalysisRepository(db).exists(symbol, analysis_date, movement.start_time):
                raise self._duplicate(movement)
            predictions = PredictionRepository(db).find_by_symbol_created_between(symbol, window_start, window_end)

        articles = self.article_store.find_articles_in_window(symbol, window_start, window_end)

        missed = len(predictions) == 0
        reasons: List[str] = []
        reason_code = None
        if missed:
            rule = classify_missed_reason(
                MissContext(symbol, articles, mention_checker=self.entity_extractor),
                self.reason_table,
            )
            reasons = [rule.description]
            reason_code = rule.code.value

        accuracy = 0.0 if missed else retrospective_accuracy(predictions, movement.movement_percent)

        try:
            with session_scope(self.session_factory) as db:
                analysis = RetrospectiveAnalysisRepository(db).create(
                    stock_symbol=symbol,
                    movement_percent=movement.movement_percent,
                    analysis_date=analysis_date,
                    movement_start_time=movement.start_time,
                    movement_end_time=movement.end_time,
                    preceding_news_count=len(articles),
                    existing_predictions_count=len(predictions),
                    missed_opportunity=missed,
                    missed_reasons=reasons,
                    retrospective_accuracy=round(accuracy, 2),
                    analysis_data=self._analysis_data(window_start, window_end, articles, predictions, reason_code),
                    created_at=self.clock.now(),
                )
        except IntegrityError as e:
            raise self._duplicate(movement) from e

        if missed:
            logger.info(
                f"Missed opportunity: {symbol} moved {movement.movement_percent:+.2f}% "
                f"with no prediction ({reasons[0]})"
            )
        else:
            logger.info(
                f"Covered movement: {symbol} {movement.movement_percent:+.2f}% by {len(predictions)} "
                f"prediction(s), retrospective accuracy {accuracy:.1f}"
            )
        return analysis

    def run_retrospective_pass(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """
        Scan every material movement the price store reports in [start, end].

        Already-analyzed movements are counted, not treated as failures.
        """
        if self.price_store is None:
            raise ValidationError("Retrospective pass requires a price store")

        movements = self.price_store.find_price_movements(start, end, self.materiality_threshold)
        result: Dict[str, Any] = {
            "movements": len(movements),
            "analyzed": 0,
            "missed": 0,
            "duplicates": 0,
            "failures": [],
        }

        for movement in movements:
            try:
                analysis = self.scan(movement)
            except IdempotencyGuardError:
                result["duplicates"] += 1
                continue
            except Exception as e:
                logger.error(f"Retrospective scan failed for {movement.stock_symbol}: {e}")
                result["failures"].append({"stock_symbol": movement.stock_symbol, "error": str(e)})
                continue

            result["analyzed"] += 1
            if analysis.missed_opportunity:
                result["missed"] += 1

        logger.info(
            f"Retrospective pass {start} - {end}: {result['analyzed']} analyzed, "
            f"{result['missed']} missed, {result['duplicates']} duplicates, "
            f"{len(result['failures'])} failures"
        )
        return result

    def list_analyses(
        self,
        stock_symbol: Optional[str] = None,
        missed_only: bool = False,
        limit: Optional[int] = 100,
    ) -> List[RetrospectiveAnalysis]:
        with session_scope(self.session_factory) as db:
            return RetrospectiveAnalysisRepository(db).find(stock_symbol, missed_only=missed_only, limit=limit)

    @staticmethod
    def _duplicate(movement: PriceMovement) -> DuplicateAnalysisError:
        return DuplicateAnalysisError(
            f"Movement for {movement.stock_symbol} starting {movement.start_time} was already analyzed",
            details={
                "stock_symbol": movement.stock_symbol,
                "analysis_date": str(movement.resolved_analysis_date),
                "movement_start_time": str(movement.start_time),
            },
        )

    @staticmethod
    def _analysis_data(
        window_start: datetime,
        window_end: datetime,
        articles: Sequence[ArticleSummary],
        predictions: Sequence[Prediction],
        reason_code: Optional[str],
    ) -> Dict[str, Any]:
        sentiments = [a.sentiment_score for a in articles if a.sentiment_score is not None]
        return {
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
            "article_ids": [a.id for a in articles],
            "news_categories": sorted({a.category for a in articles if a.category}),
            "average_sentiment": sum(sentiments) / len(sentiments) if sentiments else None,
            "prediction_ids": [p.id for p in predictions],
            "missed_reason_code": reason_code,
        }
