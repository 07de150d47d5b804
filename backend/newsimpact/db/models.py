"""
SQLAlchemy 2.0 database models for the news impact learning engine.

Timestamps are naive UTC. Rule and pattern rows carry a version column
used for optimistic concurrency on running-mean updates.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from newsimpact.utils.datetime import utc_now

Base = declarative_base()


class NewsArticle(Base):
    """Ingested news article. Feed parsing and dedup happen upstream."""

    __tablename__ = "news_articles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    title = Column(String, nullable=False)
    summary = Column(Text, nullable=True)
    source = Column(String, nullable=True, index=True)
    category = Column(String, nullable=True, index=True)
    sentiment_score = Column(Float, nullable=True)
    impact_level = Column(String, nullable=True)  # LOW, MEDIUM, HIGH
    status = Column(String, nullable=False, default="PENDING")  # PENDING, PROCESSED, FAILED
    published_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now)

    mentions = relationship("StockMention", back_populates="article", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<NewsArticle(id={self.id}, source={self.source}, published_at={self.published_at})>"


class StockMention(Base):
    """Stock symbol extracted from an article by entity extraction."""

    __tablename__ = "stock_mentions"
    __table_args__ = (
        UniqueConstraint("article_id", "stock_symbol", name="uix_stock_mention"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(Integer, ForeignKey("news_articles.id"), nullable=False, index=True)
    stock_symbol = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now)

    article = relationship("NewsArticle", back_populates="mentions")

    def __repr__(self) -> str:
        return f"<StockMention(article_id={self.article_id}, symbol={self.stock_symbol})>"


class StockPrice(Base):
    """Price observation for a symbol."""

    __tablename__ = "stock_prices"
    __table_args__ = (
        Index("ix_stock_prices_symbol_time", "stock_symbol", "recorded_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    stock_symbol = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    volume = Column(Float, nullable=True)
    recorded_at = Column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<StockPrice(symbol={self.stock_symbol}, price={self.price}, at={self.recorded_at})>"


class Prediction(Base):
    """
    Predicted price impact of an article on a stock.

    Pending until `accuracy` is set; evaluated exactly once and immutable
    afterwards. `aggregates_applied_at` marks completion of the rule and
    pattern updates that follow evaluation.
    """

    __tablename__ = "predictions"
    __table_args__ = (
        Index("ix_predictions_pending_due", "evaluated_at", "due_at"),
        Index("ix_predictions_symbol_created", "stock_symbol", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    article_id = Column(Integer, nullable=False, index=True)
    stock_symbol = Column(String, nullable=False)

    predicted_impact = Column(String, nullable=False)  # UP, DOWN, FLAT
    predicted_change_percent = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    time_window = Column(String, nullable=False, default="1D")

    # Article attributes used as rule and pattern keys
    source = Column(String, nullable=True)
    category = Column(String, nullable=True)
    sentiment_score = Column(Float, nullable=True)
    impact_level = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False)

    actual_impact = Column(String, nullable=True)
    actual_change_percent = Column(Float, nullable=True)
    accuracy = Column(Float, nullable=True)
    evaluated_at = Column(DateTime, nullable=True)
    aggregates_applied_at = Column(DateTime, nullable=True, index=True)

    @property
    def is_evaluated(self) -> bool:
        return self.accuracy is not None

    def __repr__(self) -> str:
        return (
            f"<Prediction(id={self.id}, symbol={self.stock_symbol}, "
            f"impact={self.predicted_impact}, accuracy={self.accuracy})>"
        )


class PredictionRule(Base):
    """Running accuracy statistics keyed by (rule_type, rule_value)."""

    __tablename__ = "prediction_rules"
    __table_args__ = (
        UniqueConstraint("rule_type", "rule_value", name="uix_prediction_rule_key"),
        Index("ix_prediction_rules_accuracy", "average_accuracy"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_type = Column(String(50), nullable=False, index=True)
    rule_value = Column(String(255), nullable=False)
    total_predictions = Column(Integer, nullable=False, default=0)
    successful_predictions = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    average_accuracy = Column(Float, nullable=False, default=0.0)
    average_change_percent = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<PredictionRule(type={self.rule_type}, value={self.rule_value}, "
            f"n={self.total_predictions}, success_rate={self.success_rate:.2f})>"
        )


class PatternRecognition(Base):
    """Recurring attribute combination with its observed accuracy profile."""

    __tablename__ = "pattern_recognitions"
    __table_args__ = (
        UniqueConstraint("pattern_type", "pattern_key", name="uix_pattern_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    pattern_type = Column(String(50), nullable=False, index=True)
    pattern_key = Column(String, nullable=False)  # normalized pattern_data
    pattern_data = Column(JSON, nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    occurrences = Column(Integer, nullable=False, default=0)
    accuracy = Column(Float, nullable=False, default=0.0)
    low_confidence = Column(Boolean, nullable=False, default=True)
    last_seen = Column(DateTime, nullable=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<PatternRecognition(type={self.pattern_type}, key={self.pattern_key}, "
            f"occurrences={self.occurrences})>"
        )


class AggregateApplication(Base):
    """
    Idempotency ledger for the aggregate step of an evaluation.

    One row per (prediction, aggregate key) written in the same transaction
    as the rule or pattern update it guards.
    """

    __tablename__ = "aggregate_applications"
    __table_args__ = (
        UniqueConstraint("prediction_id", "aggregate_type", "aggregate_key", name="uix_aggregate_application"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    prediction_id = Column(Integer, nullable=False, index=True)
    aggregate_type = Column(String(20), nullable=False)  # RULE, PATTERN
    aggregate_key = Column(String, nullable=False)
    applied_at = Column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<AggregateApplication(prediction_id={self.prediction_id}, key={self.aggregate_key})>"


class RetrospectiveAnalysis(Base):
    """Append-only audit record of a material move and whether it was predicted."""

    __tablename__ = "retrospective_analyses"
    __table_args__ = (
        UniqueConstraint("stock_symbol", "analysis_date", "movement_start_time", name="uix_retrospective_movement"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    stock_symbol = Column(String, nullable=False, index=True)
    movement_percent = Column(Float, nullable=False)
    analysis_date = Column(Date, nullable=False, index=True)
    movement_start_time = Column(DateTime, nullable=False)
    movement_end_time = Column(DateTime, nullable=False)
    preceding_news_count = Column(Integer, nullable=False, default=0)
    existing_predictions_count = Column(Integer, nullable=False, default=0)
    missed_opportunity = Column(Boolean, nullable=False, index=True)
    missed_reasons = Column(JSON, nullable=False, default=list)
    retrospective_accuracy = Column(Float, nullable=False, default=0.0)
    analysis_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return (
            f"<RetrospectiveAnalysis(symbol={self.stock_symbol}, move={self.movement_percent}, "
            f"missed={self.missed_opportunity})>"
        )


class DailyReport(Base):
    """Write-once daily snapshot of ledger, rule and pattern state."""

    __tablename__ = "daily_reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    report_date = Column(Date, nullable=False, unique=True, index=True)
    report_data = Column(JSON, nullable=False)
    total_articles = Column(Integer, nullable=False, default=0)
    total_predictions = Column(Integer, nullable=False, default=0)
    average_accuracy = Column(Float, nullable=False, default=0.0)
    top_gainers = Column(JSON, nullable=False, default=list)
    top_losers = Column(JSON, nullable=False, default=list)
    insights = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<DailyReport(date={self.report_date}, predictions={self.total_predictions})>"


class JobExecutionHistory(Base):
    """One row per scheduled job run, including runs skipped because the job was busy."""

    __tablename__ = "job_execution_history"
    __table_args__ = (
        Index("ix_job_execution_history_name_start", "job_name", "start_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String, nullable=False)
    status = Column(String, nullable=False)  # SUCCESS, FAILED, SKIPPED
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    result_summary = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self) -> str:
        return f"<JobExecutionHistory(job={self.job_name}, status={self.status})>"
