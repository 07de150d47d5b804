"""
Learning engine: the single entry point callers use.

Wires the ledger, rule aggregator, pattern recognizer, retrospective
scanner and report compiler together and runs the evaluation pass.

Evaluating a prediction spans three aggregates (prediction, rules,
patterns). It runs as a sequence keyed by prediction id:

    1. ledger marks the prediction evaluated (exactly once)
    2. each rule and the outcome pattern are updated, each step guarded by
       an idempotency marker
    3. the prediction is stamped `aggregates_applied_at`

A failure after step 1 leaves the stamp unset; the next evaluation pass
re-runs steps 2-3, and already-applied keys are skipped.
"""

import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pydantic
from loguru import logger
from sqlalchemy.orm import sessionmaker

from newsimpact.config import Settings, settings as default_settings
from newsimpact.db.models import DailyReport, PatternRecognition, Prediction, PredictionRule, RetrospectiveAnalysis
from newsimpact.domain.market import PriceMovement
from newsimpact.domain.predictions import (
    ActualOutcome,
    PredictionDraft,
    derive_rule_keys,
    determine_actual_impact,
    prediction_outcome_bag,
)
from newsimpact.services.daily_report import DailyReportCompiler
from newsimpact.services.locks import KeyedLockRegistry
from newsimpact.services.market_data import (
    ArticleStore,
    EntityExtractor,
    PriceStore,
    SqlArticleStore,
    SqlEntityExtractor,
    SqlPriceStore,
)
from newsimpact.services.pattern_recognizer import PatternRecognizer
from newsimpact.services.prediction_ledger import PredictionLedger
from newsimpact.services.retrospective_scanner import RetrospectiveScanner
from newsimpact.services.rule_aggregator import RuleAggregator
from newsimpact.utils.datetime import Clock, SystemClock, to_naive_utc
from newsimpact.utils.errors import IdempotencyGuardError, ValidationError


def _validated(model, payload, what: str):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid {what}",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


class LearningEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        article_store: ArticleStore,
        price_store: PriceStore,
        entity_extractor: Optional[EntityExtractor] = None,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.clock = clock or SystemClock()
        self.price_store = price_store
        locks = KeyedLockRegistry()

        self.ledger = PredictionLedger(
            session_factory,
            clock=self.clock,
            accuracy_epsilon=self.config.accuracy_epsilon,
        )
        self.rules = RuleAggregator(
            session_factory,
            clock=self.clock,
            locks=locks,
            max_attempts=self.config.aggregate_update_max_attempts,
            retry_wait_seconds=self.config.aggregate_retry_wait_seconds,
        )
        self.patterns = PatternRecognizer(
            session_factory,
            clock=self.clock,
            locks=locks,
            min_sample_count=self.config.pattern_min_sample_count,
            time_pattern_lookback_days=self.config.time_pattern_lookback_days,
            max_attempts=self.config.aggregate_update_max_attempts,
            retry_wait_seconds=self.config.aggregate_retry_wait_seconds,
            price_store=price_store,
            sector_map=self.config.sector_map,
        )
        self.scanner = RetrospectiveScanner(
            session_factory,
            article_store=article_store,
            entity_extractor=entity_extractor,
            price_store=price_store,
            clock=self.clock,
            materiality_threshold=self.config.materiality_threshold_percent,
            lookback_hours=self.config.retrospective_lookback_hours,
        )
        self.reports = DailyReportCompiler(
            session_factory,
            article_store=article_store,
            price_store=price_store,
            clock=self.clock,
            top_movers=self.config.report_top_movers,
            success_threshold=self.config.success_accuracy_threshold,
            reliable_success_rate=self.config.report_reliable_success_rate,
            reliable_pattern_accuracy=self.config.report_reliable_pattern_accuracy,
            min_sample_size=self.config.report_min_sample_size,
            review_accuracy_threshold=self.config.report_review_accuracy_threshold,
            pattern_min_sample_count=self.config.pattern_min_sample_count,
        )

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def record_prediction(self, draft: Union[PredictionDraft, Dict[str, Any]]) -> int:
        draft = _validated(PredictionDraft, draft, "prediction draft")
        if self.config.apply_time_patterns:
            created_at = to_naive_utc(draft.created_at) if draft.created_at else self.clock.now()
            draft = self.patterns.apply_patterns(draft, created_at)
        return self.ledger.record(draft)

    def get_prediction(self, prediction_id: int) -> Prediction:
        return self.ledger.get(prediction_id)

    def evaluate_prediction(
        self,
        prediction_id: int,
        actual: Union[ActualOutcome, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> Prediction:
        """
        Evaluate a prediction and fold it into rules and patterns.

        Raises:
            RecordNotFoundError, AlreadyEvaluatedError, PredictionNotDueError,
            ValidationError, TransientFailureError (aggregate step only; the
            evaluation itself is kept and reconciled on the next pass)
        """
        outcome = _validated(ActualOutcome, actual, "actual outcome")
        prediction = self.ledger.evaluate(prediction_id, outcome, now=now)
        self.apply_aggregates(prediction)
        return prediction

    def apply_aggregates(self, prediction: Prediction) -> None:
        """Idempotent aggregate step for an evaluated prediction."""
        success = prediction.accuracy >= self.config.success_accuracy_threshold

        self.rules.apply_evaluation(
            prediction.id,
            derive_rule_keys(prediction),
            prediction.accuracy,
            prediction.actual_change_percent,
            success,
        )
        self.patterns.record_evaluation(
            prediction.id,
            prediction_outcome_bag(prediction),
            prediction.accuracy,
            prediction.confidence,
        )

        applied_at = self.clock.now()
        self.ledger.mark_aggregates_applied(prediction.id, applied_at)
        prediction.aggregates_applied_at = applied_at

    def reconcile_aggregates(self, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Finish the aggregate step for evaluated predictions that never completed it."""
        result: Dict[str, Any] = {"reconciled": 0, "failures": []}

        for prediction in self.ledger.find_pending_aggregation():
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                self.apply_aggregates(prediction)
                result["reconciled"] += 1
            except Exception as e:
                logger.error(f"Aggregate reconciliation failed for prediction {prediction.id}: {e}")
                result["failures"].append({"prediction_id": prediction.id, "error": str(e)})

        if result["reconciled"]:
            logger.info(f"Reconciled aggregates for {result['reconciled']} predictions")
        return result

    def run_evaluation_pass(
        self,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Evaluate every due prediction that has price data.

        Symbols are processed concurrently, predictions of one symbol in
        order. A failing prediction is recorded and the pass continues.
        Setting cancel_event stops the pass between predictions; finished
        units stay committed.
        """
        now = now or self.clock.now()
        logger.info(f"Evaluation pass started (now={now})")

        reconciliation = self.reconcile_aggregates(cancel_event)
        result: Dict[str, Any] = {
            "reconciled": reconciliation["reconciled"],
            "evaluated": 0,
            "awaiting_price_data": 0,
            "already_evaluated": 0,
            "failures": list(reconciliation["failures"]),
            "cancelled": False,
        }

        by_symbol: Dict[str, List[Prediction]] = defaultdict(list)
        for prediction in self.ledger.find_due(now):
            by_symbol[prediction.stock_symbol].append(prediction)

        if by_symbol:
            workers = min(self.config.evaluation_max_workers, len(by_symbol))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="evaluation-") as executor:
                futures = {
                    executor.submit(self._evaluate_symbol, symbol, predictions, now, cancel_event): symbol
                    for symbol, predictions in by_symbol.items()
                }
                for future in as_completed(futures):
                    partial = future.result()
                    for key in ("evaluated", "awaiting_price_data", "already_evaluated"):
                        result[key] += partial[key]
                    result["failures"].extend(partial["failures"])

        result["cancelled"] = cancel_event is not None and cancel_event.is_set()
        logger.info(
            f"Evaluation pass finished: {result['evaluated']} evaluated, "
            f"{result['awaiting_price_data']} awaiting price data, "
            f"{len(result['failures'])} failures"
            + (" (cancelled)" if result["cancelled"] else "")
        )
        return result

    def _evaluate_symbol(
        self,
        symbol: str,
        predictions: List[Prediction],
        now: datetime,
        cancel_event: Optional[threading.Event],
    ) -> Dict[str, Any]:
        counts: Dict[str, Any] = {"evaluated": 0, "awaiting_price_data": 0, "already_evaluated": 0, "failures": []}

        for prediction in predictions:
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                change = self.price_store.find_price_change(symbol, prediction.created_at, prediction.due_at)
                if change is None:
                    counts["awaiting_price_data"] += 1
                    continue

                outcome = ActualOutcome(
                    actual_impact=determine_actual_impact(change, self.config.flat_move_band_percent),
                    actual_change_percent=round(change, 4),
                )
                self.evaluate_prediction(prediction.id, outcome, now=now)
                counts["evaluated"] += 1
            except IdempotencyGuardError:
                counts["already_evaluated"] += 1
            except Exception as e:
                logger.error(f"Evaluation of prediction {prediction.id} ({symbol}) failed: {e}")
                counts["failures"].append({"prediction_id": prediction.id, "stock_symbol": symbol, "error": str(e)})

        return counts

    def get_prediction_accuracy_stats(self, symbol: Optional[str] = None) -> Dict[str, Any]:
        """Summary statistics over the ledger, optionally for one symbol."""
        predictions = self.ledger.find_all(symbol=symbol)
        evaluated = [p for p in predictions if p.is_evaluated]

        stats: Dict[str, Any] = {
            "stock_symbol": symbol.upper() if symbol else None,
            "total_predictions": len(predictions),
            "pending_predictions": len(predictions) - len(evaluated),
            "evaluated_predictions": len(evaluated),
            "average_accuracy": None,
            "median_accuracy": None,
            "success_rate": None,
            "direction_hit_rate": None,
            "mean_absolute_error": None,
        }
        if not evaluated:
            return stats

        accuracy = np.array([p.accuracy for p in evaluated], dtype=float)
        predicted = np.array([p.predicted_change_percent for p in evaluated], dtype=float)
        actual = np.array([p.actual_change_percent for p in evaluated], dtype=float)
        direction_hits = np.array([p.predicted_impact == p.actual_impact for p in evaluated], dtype=bool)

        stats.update(
            average_accuracy=round(float(np.mean(accuracy)), 2),
            median_accuracy=round(float(np.median(accuracy)), 2),
            success_rate=round(float(np.mean(accuracy >= self.config.success_accuracy_threshold)), 4),
            direction_hit_rate=round(float(np.mean(direction_hits)), 4),
            mean_absolute_error=round(float(np.mean(np.abs(predicted - actual))), 4),
        )
        return stats

    # ------------------------------------------------------------------
    # Rules and patterns
    # ------------------------------------------------------------------

    def get_rule(self, rule_type: str, rule_value: str) -> Optional[PredictionRule]:
        return self.rules.get_rule(rule_type, rule_value)

    def list_rules(self, rule_type: Optional[str] = None) -> List[PredictionRule]:
        return self.rules.list_rules(rule_type)

    def get_top_rules(self, limit: int = 10, min_predictions: int = 1) -> List[PredictionRule]:
        return self.rules.get_top_rules(limit=limit, min_predictions=min_predictions)

    def get_patterns_by_type(self, pattern_type: str) -> List[PatternRecognition]:
        return self.patterns.get_patterns_by_type(pattern_type)

    def analyze_time_based_patterns(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return self.patterns.analyze_time_based_patterns(now)

    def analyze_market_patterns(self, now: Optional[datetime] = None) -> Dict[str, int]:
        return self.patterns.analyze_market_patterns(now)

    # ------------------------------------------------------------------
    # Retrospective analysis
    # ------------------------------------------------------------------

    def run_retrospective_scan(self, movement: Union[PriceMovement, Dict[str, Any]]) -> RetrospectiveAnalysis:
        return self.scanner.scan(_validated(PriceMovement, movement, "price movement"))

    def run_retrospective_pass(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Scan material moves in [start, end]; defaults to the trailing lookback window."""
        end = end or self.clock.now()
        start = start or end - timedelta(hours=self.config.retrospective_lookback_hours)
        return self.scanner.run_retrospective_pass(start, end)

    def list_retrospective_analyses(
        self,
        symbol: Optional[str] = None,
        missed_only: bool = False,
        limit: Optional[int] = 100,
    ) -> List[RetrospectiveAnalysis]:
        return self.scanner.list_analyses(symbol, missed_only=missed_only, limit=limit)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def compile_daily_report(self, report_date: date) -> DailyReport:
        return self.reports.compile(report_date)

    def get_report_by_date(self, report_date: date) -> Optional[DailyReport]:
        return self.reports.get_report_by_date(report_date)


def build_engine(
    session_factory: Optional[sessionmaker] = None,
    clock: Optional[Clock] = None,
    config: Optional[Settings] = None,
) -> LearningEngine:
    """Engine over the SQL-backed article, price and mention stores."""
    if session_factory is None:
        from newsimpact.db.session import SessionLocal

        session_factory = SessionLocal

    return LearningEngine(
        session_factory,
        article_store=SqlArticleStore(session_factory),
        price_store=SqlPriceStore(session_factory),
        entity_extractor=SqlEntityExtractor(session_factory),
        clock=clock,
        config=config,
    )
