"""
Repository pattern for data access.

Provides clean interfaces for database operations, abstracting SQLAlchemy details.
Each repository handles a single aggregate and works on a caller-owned session;
committing is the caller's unit of work.
"""

import re
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import and_, desc, func, or_, update
from sqlalchemy.orm import Session

from newsimpact.db.models import (
    AggregateApplication,
    DailyReport,
    JobExecutionHistory,
    NewsArticle,
    PatternRecognition,
    Prediction,
    PredictionRule,
    RetrospectiveAnalysis,
    StockMention,
    StockPrice,
)
from newsimpact.utils.errors import RecordNotFoundError


class PredictionRepository:
    """Repository for Prediction operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, prediction_id: int) -> Optional[Prediction]:
        """Get prediction by ID."""
        return self.db.query(Prediction).filter(Prediction.id == prediction_id).first()

    def get_or_raise(self, prediction_id: int) -> Prediction:
        prediction = self.get_by_id(prediction_id)
        if prediction is None:
            raise RecordNotFoundError(
                f"Prediction {prediction_id} not found",
                details={"prediction_id": prediction_id},
            )
        return prediction

    def create(self, **kwargs) -> Prediction:
        """Create a new pending prediction."""
        prediction = Prediction(**kwargs)
        self.db.add(prediction)
        self.db.flush()
        return prediction

    def find_due(self, now: datetime, limit: Optional[int] = None) -> List[Prediction]:
        """Pending predictions whose deadline has passed, oldest deadline first."""
        query = (
            self.db.query(Prediction)
            .filter(Prediction.accuracy.is_(None), Prediction.due_at <= now)
            .order_by(Prediction.due_at, Prediction.id)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def find_pending_aggregation(self, limit: Optional[int] = None) -> List[Prediction]:
        """Evaluated predictions whose rule/pattern updates have not completed."""
        query = (
            self.db.query(Prediction)
            .filter(Prediction.accuracy.isnot(None), Prediction.aggregates_applied_at.is_(None))
            .order_by(Prediction.evaluated_at, Prediction.id)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def mark_evaluated(
        self,
        prediction_id: int,
        actual_impact: str,
        actual_change_percent: float,
        accuracy: float,
        evaluated_at: datetime,
    ) -> bool:
        """
        Set the evaluation outcome if, and only if, none is set yet.

        Returns False when another writer evaluated the prediction first.
        """
        result = self.db.execute(
            update(Prediction)
            .where(Prediction.id == prediction_id, Prediction.accuracy.is_(None))
            .values(
                actual_impact=actual_impact,
                actual_change_percent=actual_change_percent,
                accuracy=accuracy,
                evaluated_at=evaluated_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_aggregates_applied(self, prediction_id: int, applied_at: datetime) -> None:
        self.db.execute(
            update(Prediction)
            .where(Prediction.id == prediction_id)
            .values(aggregates_applied_at=applied_at)
            .execution_options(synchronize_session=False)
        )

    def find_by_symbol_created_between(self, symbol: str, start: datetime, end: datetime) -> List[Prediction]:
        return (
            self.db.query(Prediction)
            .filter(
                Prediction.stock_symbol == symbol.upper(),
                Prediction.created_at >= start,
                Prediction.created_at <= end,
            )
            .order_by(Prediction.created_at)
            .all()
        )

    def find_evaluated_between(self, start: datetime, end: datetime) -> List[Prediction]:
        """Predictions evaluated in [start, end)."""
        return (
            self.db.query(Prediction)
            .filter(
                Prediction.accuracy.isnot(None),
                Prediction.evaluated_at >= start,
                Prediction.evaluated_at < end,
            )
            .order_by(Prediction.evaluated_at, Prediction.id)
            .all()
        )

    def find_created_between(self, start: datetime, end: datetime, evaluated_only: bool = False) -> List[Prediction]:
        query = self.db.query(Prediction).filter(
            Prediction.created_at >= start,
            Prediction.created_at < end,
        )
        if evaluated_only:
            query = query.filter(Prediction.accuracy.isnot(None))
        return query.order_by(Prediction.created_at).all()

    def find_all(self, symbol: Optional[str] = None) -> List[Prediction]:
        query = self.db.query(Prediction)
        if symbol:
            query = query.filter(Prediction.stock_symbol == symbol.upper())
        return query.order_by(Prediction.id).all()


class PredictionRuleRepository:
    """Repository for PredictionRule operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, rule_type: str, rule_value: str) -> Optional[PredictionRule]:
        return (
            self.db.query(PredictionRule)
            .filter(PredictionRule.rule_type == rule_type, PredictionRule.rule_value == rule_value)
            .first()
        )

    def create(self, rule_type: str, rule_value: str) -> PredictionRule:
        """Create an empty rule row; flushes so a concurrent duplicate fails here."""
        rule = PredictionRule(
            rule_type=rule_type,
            rule_value=rule_value,
            total_predictions=0,
            successful_predictions=0,
            success_rate=0.0,
            average_accuracy=0.0,
            average_change_percent=0.0,
        )
        self.db.add(rule)
        self.db.flush()
        return rule

    def find_by_type(self, rule_type: Optional[str] = None) -> List[PredictionRule]:
        query = self.db.query(PredictionRule)
        if rule_type:
            query = query.filter(PredictionRule.rule_type == rule_type)
        return query.order_by(PredictionRule.rule_type, PredictionRule.rule_value).all()

    def find_top_performing(self, limit: int = 10, min_predictions: int = 1) -> List[PredictionRule]:
        return (
            self.db.query(PredictionRule)
            .filter(PredictionRule.total_predictions >= min_predictions)
            .order_by(desc(PredictionRule.average_accuracy), desc(PredictionRule.total_predictions))
            .limit(limit)
            .all()
        )

    def find_updated_between(self, start: datetime, end: datetime) -> List[PredictionRule]:
        return (
            self.db.query(PredictionRule)
            .filter(PredictionRule.last_updated >= start, PredictionRule.last_updated < end)
            .order_by(PredictionRule.rule_type, PredictionRule.rule_value)
            .all()
        )


class PatternRecognitionRepository:
    """Repository for PatternRecognition operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, pattern_type: str, pattern_key: str) -> Optional[PatternRecognition]:
        return (
            self.db.query(PatternRecognition)
            .filter(PatternRecognition.pattern_type == pattern_type, PatternRecognition.pattern_key == pattern_key)
            .first()
        )

    def create(self, **kwargs) -> PatternRecognition:
        pattern = PatternRecognition(**kwargs)
        self.db.add(pattern)
        self.db.flush()
        return pattern

    def find_by_type(self, pattern_type: str) -> List[PatternRecognition]:
        return (
            self.db.query(PatternRecognition)
            .filter(PatternRecognition.pattern_type == pattern_type)
            .order_by(desc(PatternRecognition.accuracy), desc(PatternRecognition.occurrences))
            .all()
        )

    def find_seen_between(self, pattern_type: str, start: datetime, end: datetime) -> List[PatternRecognition]:
        return (
            self.db.query(PatternRecognition)
            .filter(
                PatternRecognition.pattern_type == pattern_type,
                PatternRecognition.last_seen >= start,
                PatternRecognition.last_seen < end,
            )
            .order_by(desc(PatternRecognition.accuracy))
            .all()
        )


class AggregateApplicationRepository:
    """Repository for the aggregate-step idempotency ledger."""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, prediction_id: int, aggregate_type: str, aggregate_key: str) -> bool:
        return (
            self.db.query(AggregateApplication.id)
            .filter(
                AggregateApplication.prediction_id == prediction_id,
                AggregateApplication.aggregate_type == aggregate_type,
                AggregateApplication.aggregate_key == aggregate_key,
            )
            .first()
            is not None
        )

    def record(self, prediction_id: int, aggregate_type: str, aggregate_key: str, applied_at: datetime) -> AggregateApplication:
        entry = AggregateApplication(
            prediction_id=prediction_id,
            aggregate_type=aggregate_type,
            aggregate_key=aggregate_key,
            applied_at=applied_at,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def count_for_prediction(self, prediction_id: int) -> int:
        return (
            self.db.query(func.count(AggregateApplication.id))
            .filter(AggregateApplication.prediction_id == prediction_id)
            .scalar()
        )


class RetrospectiveAnalysisRepository:
    """Repository for RetrospectiveAnalysis operations."""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, stock_symbol: str, analysis_date: date, movement_start_time: datetime) -> bool:
        return (
            self.db.query(RetrospectiveAnalysis.id)
            .filter(
                RetrospectiveAnalysis.stock_symbol == stock_symbol,
                RetrospectiveAnalysis.analysis_date == analysis_date,
                RetrospectiveAnalysis.movement_start_time == movement_start_time,
            )
            .first()
            is not None
        )

    def create(self, **kwargs) -> RetrospectiveAnalysis:
        analysis = RetrospectiveAnalysis(**kwargs)
        self.db.add(analysis)
        self.db.flush()
        return analysis

    def find(
        self,
        stock_symbol: Optional[str] = None,
        missed_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[RetrospectiveAnalysis]:
        query = self.db.query(RetrospectiveAnalysis)
        if stock_symbol:
            query = query.filter(RetrospectiveAnalysis.stock_symbol == stock_symbol.upper())
        if missed_only:
            query = query.filter(RetrospectiveAnalysis.missed_opportunity.is_(True))
        query = query.order_by(desc(RetrospectiveAnalysis.analysis_date), desc(RetrospectiveAnalysis.id))
        if limit:
            query = query.limit(limit)
        return query.all()

    def find_by_analysis_date(self, analysis_date: date) -> List[RetrospectiveAnalysis]:
        return (
            self.db.query(RetrospectiveAnalysis)
            .filter(RetrospectiveAnalysis.analysis_date == analysis_date)
            .all()
        )


class DailyReportRepository:
    """Repository for DailyReport operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_date(self, report_date: date) -> Optional[DailyReport]:
        return self.db.query(DailyReport).filter(DailyReport.report_date == report_date).first()

    def create(self, **kwargs) -> DailyReport:
        report = DailyReport(**kwargs)
        self.db.add(report)
        self.db.flush()
        return report

    def find_recent(self, limit: int = 30) -> List[DailyReport]:
        return self.db.query(DailyReport).order_by(desc(DailyReport.report_date)).limit(limit).all()


class NewsArticleRepository:
    """Repository for NewsArticle and StockMention operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, mentions: Optional[List[str]] = None, **kwargs) -> NewsArticle:
        article = NewsArticle(**kwargs)
        for symbol in mentions or []:
            article.mentions.append(StockMention(stock_symbol=symbol.upper()))
        self.db.add(article)
        self.db.flush()
        return article

    def find_in_window(self, start: datetime, end: datetime, symbol: Optional[str] = None) -> List[NewsArticle]:
        """
        Articles published in [start, end].

        With a symbol, only articles that carry an extracted mention of it or
        whose title or summary names it as a standalone token ("GE" matches
        "GE shares", not "GEneral" or "merger").
        """
        query = self.db.query(NewsArticle).filter(
            NewsArticle.published_at >= start,
            NewsArticle.published_at <= end,
        )

        if not symbol:
            return query.order_by(NewsArticle.published_at).all()

        symbol = symbol.upper()
        pattern = f"%{symbol}%"
        mentioned = self.db.query(StockMention.article_id).filter(StockMention.stock_symbol == symbol)
        candidates = (
            query.filter(
                or_(
                    NewsArticle.title.ilike(pattern),
                    NewsArticle.summary.ilike(pattern),
                    NewsArticle.id.in_(mentioned),
                )
            )
            .order_by(NewsArticle.published_at)
            .all()
        )

        # LIKE is only a prefilter; a text hit must be the whole token
        mentioned_ids = {row.article_id for row in mentioned.all()}
        token = re.compile(rf"(?<![A-Za-z0-9]){re.escape(symbol)}(?![A-Za-z0-9])")
        return [
            article
            for article in candidates
            if article.id in mentioned_ids
            or token.search(article.title or "")
            or token.search(article.summary or "")
        ]

    def find_published_between(self, start: datetime, end: datetime) -> List[NewsArticle]:
        """Articles published in [start, end)."""
        return (
            self.db.query(NewsArticle)
            .filter(NewsArticle.published_at >= start, NewsArticle.published_at < end)
            .order_by(NewsArticle.published_at)
            .all()
        )

    def has_mention(self, article_id: int, symbol: str) -> bool:
        return (
            self.db.query(StockMention.id)
            .filter(StockMention.article_id == article_id, StockMention.stock_symbol == symbol.upper())
            .first()
            is not None
        )


class StockPriceRepository:
    """Repository for StockPrice operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, stock_symbol: str, price: float, recorded_at: datetime, volume: Optional[float] = None) -> StockPrice:
        row = StockPrice(stock_symbol=stock_symbol.upper(), price=price, recorded_at=recorded_at, volume=volume)
        self.db.add(row)
        self.db.flush()
        return row

    def last_at_or_before(self, symbol: str, moment: datetime) -> Optional[StockPrice]:
        return (
            self.db.query(StockPrice)
            .filter(StockPrice.stock_symbol == symbol.upper(), StockPrice.recorded_at <= moment)
            .order_by(desc(StockPrice.recorded_at))
            .first()
        )

    def first_at_or_after(self, symbol: str, moment: datetime) -> Optional[StockPrice]:
        return (
            self.db.query(StockPrice)
            .filter(StockPrice.stock_symbol == symbol.upper(), StockPrice.recorded_at >= moment)
            .order_by(StockPrice.recorded_at)
            .first()
        )

    def find_between(self, symbol: str, start: datetime, end: datetime) -> List[StockPrice]:
        return (
            self.db.query(StockPrice)
            .filter(
                and_(
                    StockPrice.stock_symbol == symbol.upper(),
                    StockPrice.recorded_at >= start,
                    StockPrice.recorded_at <= end,
                )
            )
            .order_by(StockPrice.recorded_at)
            .all()
        )

    def find_all_between(self, start: datetime, end: datetime) -> List[StockPrice]:
        """Every observation in [start, end), grouped by symbol in time order."""
        return (
            self.db.query(StockPrice)
            .filter(StockPrice.recorded_at >= start, StockPrice.recorded_at < end)
            .order_by(StockPrice.stock_symbol, StockPrice.recorded_at)
            .all()
        )

    def symbols_between(self, start: datetime, end: datetime) -> List[str]:
        rows = (
            self.db.query(StockPrice.stock_symbol)
            .filter(StockPrice.recorded_at >= start, StockPrice.recorded_at <= end)
            .distinct()
            .all()
        )
        return sorted(r[0] for r in rows)


class JobExecutionHistoryRepository:
    """Repository for JobExecutionHistory operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> JobExecutionHistory:
        entry = JobExecutionHistory(**kwargs)
        self.db.add(entry)
        self.db.flush()
        return entry

    def find_recent(self, job_name: Optional[str] = None, limit: int = 50) -> List[JobExecutionHistory]:
        query = self.db.query(JobExecutionHistory)
        if job_name:
            query = query.filter(JobExecutionHistory.job_name == job_name)
        return query.order_by(desc(JobExecutionHistory.start_time), desc(JobExecutionHistory.id)).limit(limit).all()
