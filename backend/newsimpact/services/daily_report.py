"""
Daily report compiler.

Builds one immutable report per calendar date from the closed-open window
[00:00, 24:00): news flow, market breadth, ledger activity, top movers,
per-category accuracy, and insights / recommendations from those figures and
from the rules and patterns touched that day.
"""

from collections import defaultdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from newsimpact.db.models import DailyReport, PatternRecognition, Prediction, PredictionRule
from newsimpact.db.repositories import (
    DailyReportRepository,
    PatternRecognitionRepository,
    PredictionRepository,
    PredictionRuleRepository,
    RetrospectiveAnalysisRepository,
)
from newsimpact.db.session import session_scope
from newsimpact.domain.predictions import PREDICTION_OUTCOME_PATTERN, TIME_BASED_PATTERN, UNKNOWN_CATEGORY
from newsimpact.domain.market import ArticleWindowStats
from newsimpact.services.market_data import ArticleStore, PriceStore, series_changes
from newsimpact.utils.datetime import Clock, SystemClock, day_bounds
from newsimpact.utils.errors import ReportAlreadyExistsError

HIGH_NEWS_VOLUME = 100  # exclusive
SENTIMENT_DOMINANCE_SHARE = 0.6  # exclusive
BREADTH_RATIO = 1.5  # exclusive


def _mover(prediction: Prediction) -> Dict[str, Any]:
    return {
        "prediction_id": prediction.id,
        "stock_symbol": prediction.stock_symbol,
        "predicted_impact": prediction.predicted_impact,
        "predicted_change_percent": prediction.predicted_change_percent,
        "actual_impact": prediction.actual_impact,
        "actual_change_percent": prediction.actual_change_percent,
        "accuracy": round(prediction.accuracy, 2),
    }


def _rule_summary(rule: PredictionRule) -> Dict[str, Any]:
    return {
        "rule_type": rule.rule_type,
        "rule_value": rule.rule_value,
        "total_predictions": rule.total_predictions,
        "success_rate": round(rule.success_rate, 4),
        "average_accuracy": round(rule.average_accuracy, 2),
    }


def _describe_pattern(pattern: PatternRecognition) -> str:
    data = pattern.pattern_data or {}
    if pattern.pattern_type == TIME_BASED_PATTERN:
        if data.get("dimension") == "hour_of_day":
            return f"predictions made at {data.get('hour'):02d}:00 UTC"
        return f"predictions made on {data.get('day')}"
    return (
        f"{data.get('category', UNKNOWN_CATEGORY)} news predicted {data.get('predicted_impact')} "
        f"over {data.get('time_window')}"
    )


class DailyReportCompiler:
    def __init__(
        self,
        session_factory: sessionmaker,
        article_store: ArticleStore,
        price_store: Optional[PriceStore] = None,
        clock: Optional[Clock] = None,
        top_movers: int = 5,
        success_threshold: float = 60.0,
        reliable_success_rate: float = 0.7,
        reliable_pattern_accuracy: float = 75.0,
        min_sample_size: int = 10,
        review_accuracy_threshold: float = 50.0,
        pattern_min_sample_count: int = 5,
    ):
        self.session_factory = session_factory
        self.article_store = article_store
        self.price_store = price_store
        self.clock = clock or SystemClock()
        self.top_movers = top_movers
        self.success_threshold = success_threshold
        self.reliable_success_rate = reliable_success_rate
        self.reliable_pattern_accuracy = reliable_pattern_accuracy
        self.min_sample_size = min_sample_size
        self.review_accuracy_threshold = review_accuracy_threshold
        self.pattern_min_sample_count = pattern_min_sample_count

    def compile(self, report_date: date) -> DailyReport:
        """
        Compile and persist the report for report_date.

        Raises:
            ReportAlreadyExistsError: a report for this date exists (left untouched)
        """
        logger.info(f"Compiling daily report for {report_date}")
        start, end = day_bounds(report_date)

        with session_scope(self.session_factory) as db:
            if DailyReportRepository(db).get_by_date(report_date) is not None:
                raise self._exists(report_date)

            evaluated = PredictionRepository(db).find_evaluated_between(start, end)
            rules = PredictionRuleRepository(db)
            touched_rules = rules.find_updated_between(start, end)
            top_rules = rules.find_top_performing(limit=self.top_movers, min_predictions=self.min_sample_size)
            patterns = PatternRecognitionRepository(db)
            touched_patterns = (
                patterns.find_seen_between(PREDICTION_OUTCOME_PATTERN, start, end)
                + patterns.find_seen_between(TIME_BASED_PATTERN, start, end)
            )
            analyses = RetrospectiveAnalysisRepository(db).find_by_analysis_date(report_date)

        news = self.article_store.summarize_window(start, end)
        market = self._market_performance(start, end)

        accuracies = np.array([p.accuracy for p in evaluated], dtype=float)
        average_accuracy = float(np.mean(accuracies)) if accuracies.size else 0.0

        top_gainers = [
            _mover(p)
            for p in sorted(evaluated, key=lambda p: p.actual_change_percent, reverse=True)[: self.top_movers]
        ]
        top_losers = [
            _mover(p)
            for p in sorted(evaluated, key=lambda p: p.actual_change_percent)[: self.top_movers]
        ]

        report_data = {
            "report_date": report_date.isoformat(),
            "window_start": start.isoformat(),
            "window_end": end.isoformat(),
            "news": {
                "total_articles": news.total_articles,
                "processed_articles": news.processed_articles,
                "categories": news.categories,
                "sentiment_distribution": news.sentiment_distribution,
            },
            "market": market,
            "evaluated_prediction_ids": [p.id for p in evaluated],
            "successful_predictions": int(np.sum(accuracies >= self.success_threshold)) if accuracies.size else 0,
            "category_breakdown": self._category_breakdown(evaluated),
            "top_rules": [_rule_summary(r) for r in top_rules],
            "retrospective": {
                "movements_analyzed": len(analyses),
                "missed_opportunities": sum(1 for a in analyses if a.missed_opportunity),
            },
        }

        try:
            with session_scope(self.session_factory) as db:
                report = DailyReportRepository(db).create(
                    report_date=report_date,
                    report_data=report_data,
                    total_articles=news.total_articles,
                    total_predictions=len(evaluated),
                    average_accuracy=round(average_accuracy, 2),
                    top_gainers=top_gainers,
                    top_losers=top_losers,
                    insights=self._market_insights(news, market) + self._insights(touched_rules, touched_patterns),
                    recommendations=self._recommendations(touched_rules),
                    created_at=self.clock.now(),
                )
        except IntegrityError as e:
            raise self._exists(report_date) from e

        logger.info(
            f"Daily report {report_date}: {report.total_articles} articles, "
            f"{report.total_predictions} evaluated predictions, average accuracy {report.average_accuracy:.1f}"
        )
        return report

    def get_report_by_date(self, report_date: date) -> Optional[DailyReport]:
        with session_scope(self.session_factory) as db:
            return DailyReportRepository(db).get_by_date(report_date)

    def _market_performance(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """Market-wide first-vs-last moves of every symbol priced in the window."""
        series = self.price_store.find_price_series(start, end) if self.price_store is not None else {}
        changes = np.array(list(series_changes(series).values()), dtype=float)
        return {
            "total_stocks": int(changes.size),
            "gainers": int(np.sum(changes > 0)),
            "losers": int(np.sum(changes < 0)),
            "average_change_percent": round(float(np.mean(changes)), 2) if changes.size else 0.0,
        }

    @staticmethod
    def _market_insights(news: ArticleWindowStats, market: Dict[str, Any]) -> List[str]:
        insights = []
        if news.total_articles > HIGH_NEWS_VOLUME:
            insights.append(f"High news volume: {news.total_articles} articles published")

        scored = sum(news.sentiment_distribution.values())
        if scored:
            positive = news.sentiment_distribution.get("POSITIVE", 0) / scored
            negative = news.sentiment_distribution.get("NEGATIVE", 0) / scored
            if positive > SENTIMENT_DOMINANCE_SHARE:
                insights.append(f"Positive sentiment dominated: {positive:.0%} of scored articles")
            elif negative > SENTIMENT_DOMINANCE_SHARE:
                insights.append(f"Negative sentiment dominated: {negative:.0%} of scored articles")

        gainers, losers = market["gainers"], market["losers"]
        if market["total_stocks"]:
            if gainers > losers * BREADTH_RATIO:
                insights.append(f"Broad advance: {gainers} gainers vs {losers} losers")
            elif losers > gainers * BREADTH_RATIO:
                insights.append(f"Broad decline: {losers} losers vs {gainers} gainers")
        return insights

    def _category_breakdown(self, evaluated: Sequence[Prediction]) -> Dict[str, Dict[str, Any]]:
        grouped: Dict[str, List[float]] = defaultdict(list)
        for p in evaluated:
            grouped[p.category or UNKNOWN_CATEGORY].append(p.accuracy)

        breakdown = {}
        for category in sorted(grouped):
            values = np.array(grouped[category], dtype=float)
            breakdown[category] = {
                "count": int(values.size),
                "average_accuracy": round(float(np.mean(values)), 2),
                "successful": int(np.sum(values >= self.success_threshold)),
            }
        return breakdown

    def _insights(
        self,
        rules: Sequence[PredictionRule],
        patterns: Sequence[PatternRecognition],
    ) -> List[str]:
        insights = []
        for rule in rules:
            if rule.total_predictions >= self.min_sample_size and rule.success_rate >= self.reliable_success_rate:
                insights.append(
                    f"Reliable {rule.rule_type.lower().replace('_', ' ')} '{rule.rule_value}': "
                    f"{rule.success_rate:.0%} success over {rule.total_predictions} predictions"
                )

        for pattern in patterns:
            if (
                pattern.occurrences >= self.pattern_min_sample_count
                and pattern.accuracy >= self.reliable_pattern_accuracy
            ):
                insights.append(
                    f"Reliable combination: {_describe_pattern(pattern)} "
                    f"({pattern.accuracy:.1f}% accuracy over {pattern.occurrences} occurrences)"
                )
        return insights

    def _recommendations(self, rules: Sequence[PredictionRule]) -> List[str]:
        recommendations = []
        for rule in rules:
            if (
                rule.total_predictions >= self.min_sample_size
                and rule.average_accuracy < self.review_accuracy_threshold
            ):
                recommendations.append(
                    f"Review {rule.rule_type.lower().replace('_', ' ')} '{rule.rule_value}': "
                    f"average accuracy {rule.average_accuracy:.1f}% over {rule.total_predictions} predictions"
                )
        return recommendations

    @staticmethod
    def _exists(report_date: date) -> ReportAlreadyExistsError:
        return ReportAlreadyExistsError(
            f"Daily report for {report_date} already exists",
            details={"report_date": report_date.isoformat()},
        )
