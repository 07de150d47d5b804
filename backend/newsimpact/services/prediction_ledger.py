"""
Prediction ledger: pending predictions, their evaluation and accuracy.

A prediction is evaluated exactly once. The transition is a conditional
update on `accuracy IS NULL`, so two concurrent evaluations of the same id
cannot both succeed.
"""

from datetime import datetime
from typing import Iterator, List, Optional

from loguru import logger
from sqlalchemy.orm import sessionmaker

from newsimpact.db.models import Prediction
from newsimpact.db.repositories import PredictionRepository
from newsimpact.db.session import session_scope
from newsimpact.domain.predictions import ActualOutcome, PredictionDraft, compute_accuracy
from newsimpact.domain.time_window import resolve_due_at
from newsimpact.utils.datetime import Clock, SystemClock, to_naive_utc
from newsimpact.utils.errors import AlreadyEvaluatedError, PredictionNotDueError


class PredictionLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Optional[Clock] = None,
        accuracy_epsilon: float = 0.01,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.accuracy_epsilon = accuracy_epsilon

    def record(self, draft: PredictionDraft) -> int:
        """
        Store a validated draft as a pending prediction.

        The time window is resolved before anything is written, so an
        InvalidTimeWindowError leaves no row behind.
        """
        created_at = to_naive_utc(draft.created_at) if draft.created_at else self.clock.now()
        due_at = resolve_due_at(created_at, draft.time_window)

        with session_scope(self.session_factory) as db:
            prediction = PredictionRepository(db).create(
                article_id=draft.article_id,
                stock_symbol=draft.stock_symbol,
                predicted_impact=draft.predicted_impact.value,
                predicted_change_percent=draft.predicted_change_percent,
                confidence=draft.confidence,
                time_window=draft.time_window,
                source=draft.source,
                category=draft.category,
                sentiment_score=draft.sentiment_score,
                impact_level=draft.impact_level,
                created_at=created_at,
                due_at=due_at,
            )
            prediction_id = prediction.id

        logger.info(
            f"Recorded prediction {prediction_id}: {draft.stock_symbol} {draft.predicted_impact.value} "
            f"{draft.predicted_change_percent:+.2f}% ({draft.time_window}, due {due_at})"
        )
        return prediction_id

    def get(self, prediction_id: int) -> Prediction:
        with session_scope(self.session_factory) as db:
            return PredictionRepository(db).get_or_raise(prediction_id)

    def find_due(self, now: Optional[datetime] = None) -> Iterator[Prediction]:
        """
        Pending predictions with due_at <= now.

        Each call queries the store afresh, so a pass interrupted midway can
        simply call again.
        """
        now = now or self.clock.now()
        with session_scope(self.session_factory) as db:
            due = PredictionRepository(db).find_due(now)

        for prediction in due:
            yield prediction

    def evaluate(
        self,
        prediction_id: int,
        outcome: ActualOutcome,
        now: Optional[datetime] = None,
    ) -> Prediction:
        """
        Score a prediction against its observed outcome and mark it evaluated.

        Raises:
            RecordNotFoundError: unknown id
            AlreadyEvaluatedError: accuracy already set (no state change)
            PredictionNotDueError: now is before due_at
        """
        now = now or self.clock.now()

        with session_scope(self.session_factory) as db:
            repo = PredictionRepository(db)
            prediction = repo.get_or_raise(prediction_id)

            if prediction.is_evaluated:
                raise AlreadyEvaluatedError(
                    f"Prediction {prediction_id} was already evaluated",
                    details={"prediction_id": prediction_id, "evaluated_at": str(prediction.evaluated_at)},
                )

            if now < prediction.due_at:
                raise PredictionNotDueError(
                    f"Prediction {prediction_id} is not due until {prediction.due_at}",
                    details={"prediction_id": prediction_id, "due_at": str(prediction.due_at)},
                )

            accuracy = compute_accuracy(
                prediction.predicted_impact,
                prediction.predicted_change_percent,
                outcome.actual_impact.value,
                outcome.actual_change_percent,
                epsilon=self.accuracy_epsilon,
            )

            updated = repo.mark_evaluated(
                prediction_id,
                actual_impact=outcome.actual_impact.value,
                actual_change_percent=outcome.actual_change_percent,
                accuracy=accuracy,
                evaluated_at=now,
            )
            if not updated:
                raise AlreadyEvaluatedError(
                    f"Prediction {prediction_id} was evaluated concurrently",
                    details={"prediction_id": prediction_id},
                )

            db.refresh(prediction)

        logger.info(
            f"Evaluated prediction {prediction_id} ({prediction.stock_symbol}): "
            f"predicted {prediction.predicted_impact} {prediction.predicted_change_percent:+.2f}%, "
            f"actual {prediction.actual_impact} {prediction.actual_change_percent:+.2f}%, "
            f"accuracy {accuracy:.1f}"
        )
        return prediction

    def find_pending_aggregation(self, limit: Optional[int] = None) -> List[Prediction]:
        with session_scope(self.session_factory) as db:
            return PredictionRepository(db).find_pending_aggregation(limit=limit)

    def mark_aggregates_applied(self, prediction_id: int, applied_at: Optional[datetime] = None) -> None:
        with session_scope(self.session_factory) as db:
            PredictionRepository(db).mark_aggregates_applied(prediction_id, applied_at or self.clock.now())

    def find_covering(self, symbol: str, start: datetime, end: datetime) -> List[Prediction]:
        """Predictions for symbol created in [start, end]."""
        with session_scope(self.session_factory) as db:
            return PredictionRepository(db).find_by_symbol_created_between(symbol, start, end)

    def find_evaluated_between(self, start: datetime, end: datetime) -> List[Prediction]:
        with session_scope(self.session_factory) as db:
            return PredictionRepository(db).find_evaluated_between(start, end)

    def find_all(self, symbol: Optional[str] = None) -> List[Prediction]:
        with session_scope(self.session_factory) as db:
            return PredictionRepository(db).find_all(symbol=symbol)
