"""
Pattern recognizer: recurring attribute combinations and their accuracy.

PREDICTION_OUTCOME patterns are keyed by the normalized bag
{category, predicted_impact, time_window} and upserted once per evaluated
prediction. TIME_BASED patterns (hour of day, day of week) are recomputed
periodically from recent evaluated predictions and feed back into new
predictions through `apply_patterns`.

SECTOR_CORRELATION, VOLUME_PATTERN and MARKET_CONDITION patterns are
snapshots of recent price action. They describe the market, not prediction
quality, so their accuracy is left at 0.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
from loguru import logger
from sqlalchemy.orm import sessionmaker

from newsimpact.db.models import PatternRecognition
from newsimpact.db.repositories import (
    AggregateApplicationRepository,
    PatternRecognitionRepository,
    PredictionRepository,
)
from newsimpact.db.session import session_scope
from newsimpact.domain.market import PricePoint
from newsimpact.domain.predictions import (
    MARKET_CONDITION_PATTERN,
    PREDICTION_OUTCOME_PATTERN,
    SECTOR_CORRELATION_PATTERN,
    TIME_BASED_PATTERN,
    VOLUME_PATTERN,
    PredictionDraft,
    normalize_pattern_data,
    running_mean,
)
from newsimpact.services.locks import KeyedLockRegistry
from newsimpact.services.market_data import PriceStore, percent_change, series_changes
from newsimpact.services.retry import conflict_guard, run_with_conflict_retry
from newsimpact.utils.datetime import Clock, SystemClock
from newsimpact.utils.errors import ValidationError

AGGREGATE_TYPE = "PATTERN"

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# (min accuracy, min samples); both bounds are exclusive
HOUR_OF_DAY_QUALIFIER = (80.0, 10)
DAY_OF_WEEK_QUALIFIER = (75.0, 5)

# Confidence points added to a new prediction per matching time pattern
HOUR_OF_DAY_CONFIDENCE_BOOST = 5.0
DAY_OF_WEEK_CONFIDENCE_BOOST = 3.0

PRICE_PATTERN_LOOKBACK = timedelta(days=7)
MARKET_CONDITION_WINDOW = timedelta(hours=24)

OTHER_SECTOR = "OTHER"
SECTOR_MIN_STOCKS = 3  # exclusive
SECTOR_TREND_PERCENT = 3.0
SECTOR_VOLATILITY_PERCENT = 5.0

VOLUME_SPIKE_RATIO = 2.0
VOLUME_SPIKE_MOVE_PERCENT = 5.0

MARKET_MIN_STOCKS = 10  # exclusive
MARKET_TREND_PERCENT = 2.0
MARKET_VOLATILITY_PERCENT = 3.0


def _hour_key(hour: int) -> Dict[str, Any]:
    return {"dimension": "hour_of_day", "hour": hour}


def _weekday_key(weekday: int) -> Dict[str, Any]:
    return {"dimension": "day_of_week", "day": WEEKDAYS[weekday]}


def classify_market_condition(mean_change: float, volatility: float) -> str:
    """Later rules win: a strong trend outranks high volatility."""
    condition = "NORMAL"
    if volatility > MARKET_VOLATILITY_PERCENT:
        condition = "HIGH_VOLATILITY"
    if mean_change > MARKET_TREND_PERCENT:
        condition = "BULLISH"
    if mean_change < -MARKET_TREND_PERCENT:
        condition = "BEARISH"
    return condition


class PatternRecognizer:
    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLockRegistry] = None,
        min_sample_count: int = 5,
        time_pattern_lookback_days: int = 30,
        max_attempts: int = 5,
        retry_wait_seconds: float = 0.05,
        price_store: Optional[PriceStore] = None,
        sector_map: Optional[Dict[str, str]] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLockRegistry()
        self.min_sample_count = min_sample_count
        self.time_pattern_lookback_days = time_pattern_lookback_days
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self.price_store = price_store
        self.sector_map = {k.upper(): v for k, v in (sector_map or {}).items()}

    def record_evaluation(
        self,
        prediction_id: int,
        pattern_data: Dict[str, Any],
        accuracy: float,
        confidence: float,
        pattern_type: str = PREDICTION_OUTCOME_PATTERN,
    ) -> bool:
        """
        Upsert the pattern for this attribute bag with one more sample.

        Returns False when the prediction was already counted.
        """
        pattern_key = normalize_pattern_data(pattern_data)
        lock_key = f"{AGGREGATE_TYPE}:{pattern_type}:{pattern_key}"

        with self.locks.hold(lock_key):
            return run_with_conflict_retry(
                self._upsert,
                prediction_id,
                pattern_type,
                pattern_key,
                pattern_data,
                accuracy,
                confidence,
                max_attempts=self.max_attempts,
                wait_seconds=self.retry_wait_seconds,
                aggregate_key=lock_key,
            )

    def _upsert(
        self,
        prediction_id: int,
        pattern_type: str,
        pattern_key: str,
        pattern_data: Dict[str, Any],
        accuracy: float,
        confidence: float,
    ) -> bool:
        marker = f"{pattern_type}:{pattern_key}"
        now = self.clock.now()

        with conflict_guard(f"{AGGREGATE_TYPE}:{marker}"), session_scope(self.session_factory) as db:
            applications = AggregateApplicationRepository(db)
            if applications.exists(prediction_id, AGGREGATE_TYPE, marker):
                logger.debug(f"Pattern {marker} already reflects prediction {prediction_id}")
                return False

            repo = PatternRecognitionRepository(db)
            pattern = repo.get_by_key(pattern_type, pattern_key)

            if pattern is None:
                pattern = repo.create(
                    pattern_type=pattern_type,
                    pattern_key=pattern_key,
                    pattern_data=dict(pattern_data),
                    occurrences=1,
                    accuracy=accuracy,
                    confidence=confidence,
                    low_confidence=1 < self.min_sample_count,
                    last_seen=now,
                )
            else:
                count = pattern.occurrences
                pattern.accuracy = running_mean(pattern.accuracy, accuracy, count)
                pattern.confidence = running_mean(pattern.confidence, confidence, count)
                pattern.occurrences = count + 1
                pattern.low_confidence = pattern.occurrences < self.min_sample_count
                pattern.last_seen = now

            applications.record(prediction_id, AGGREGATE_TYPE, marker, now)

        logger.debug(
            f"Pattern {pattern_key}: occurrences={pattern.occurrences}, accuracy={pattern.accuracy:.1f}"
        )
        return True

    def analyze_time_based_patterns(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Recompute TIME_BASED patterns from recently evaluated predictions.

        An hour of day qualifies with mean accuracy above 80 over more than 10
        predictions; a weekday with mean accuracy above 75 over more than 5.
        Qualifying buckets are written with their full recomputed statistics.
        """
        now = now or self.clock.now()
        since = now - timedelta(days=self.time_pattern_lookback_days)

        with session_scope(self.session_factory) as db:
            predictions = PredictionRepository(db).find_created_between(since, now, evaluated_only=True)

        by_hour: Dict[int, List] = defaultdict(list)
        by_weekday: Dict[int, List] = defaultdict(list)
        for p in predictions:
            by_hour[p.created_at.hour].append((p.accuracy, p.confidence))
            by_weekday[p.created_at.weekday()].append((p.accuracy, p.confidence))

        found: List[Dict[str, Any]] = []
        found += self._qualifying_buckets(
            by_hour,
            HOUR_OF_DAY_QUALIFIER,
            _hour_key,
        )
        found += self._qualifying_buckets(
            by_weekday,
            DAY_OF_WEEK_QUALIFIER,
            _weekday_key,
        )

        for entry in found:
            self._write_snapshot(TIME_BASED_PATTERN, entry, now)

        logger.info(
            f"Time-based pattern analysis over {len(predictions)} predictions since {since}: "
            f"{len(found)} qualifying buckets"
        )
        return found

    @staticmethod
    def _qualifying_buckets(buckets, qualifier, describe) -> List[Dict[str, Any]]:
        min_accuracy, min_samples = qualifier
        results = []
        for bucket in sorted(buckets):
            samples = np.array(buckets[bucket], dtype=float)
            if len(samples) <= min_samples:
                continue
            mean_accuracy = float(np.mean(samples[:, 0]))
            if mean_accuracy <= min_accuracy:
                continue
            results.append({
                "pattern_data": describe(bucket),
                "accuracy": round(mean_accuracy, 2),
                "confidence": round(float(np.mean(samples[:, 1])), 2),
                "occurrences": int(len(samples)),
            })
        return results


    def analyze_sector_correlations(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Sector-wide moves over the last week.

        Symbols are grouped by `sector_map` (unmapped symbols fall into OTHER).
        A sector with more than 3 moving stocks is recorded when its mean move
        exceeds 3% in either direction or its dispersion (population std)
        exceeds 5%.
        """
        now = now or self.clock.now()
        changes = series_changes(self._price_series(now - PRICE_PATTERN_LOOKBACK, now))

        by_sector: Dict[str, List[float]] = defaultdict(list)
        for symbol, change in changes.items():
            by_sector[self.sector_map.get(symbol, OTHER_SECTOR)].append(change)

        found = []
        for sector in sorted(by_sector):
            values = np.array(by_sector[sector], dtype=float)
            if values.size <= SECTOR_MIN_STOCKS:
                continue
            mean_change = float(np.mean(values))
            volatility = float(np.std(values))
            if abs(mean_change) <= SECTOR_TREND_PERCENT and volatility <= SECTOR_VOLATILITY_PERCENT:
                continue

            found.append({
                "key": {"sector": sector},
                "pattern_data": {
                    "sector": sector,
                    "trend": "POSITIVE" if mean_change > 0 else "NEGATIVE",
                    "average_change_percent": round(mean_change, 4),
                    "volatility": round(volatility, 4),
                    "stock_count": int(values.size),
                },
                "accuracy": 0.0,
                "confidence": round(min(100.0, abs(mean_change) * 10), 2),
                "occurrences": int(values.size),
            })

        self._write_all(SECTOR_CORRELATION_PATTERN, found, now)
        return found

    def analyze_volume_patterns(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Volume spikes that came with a large price move, over the last week.

        An observation is a spike when its volume exceeds twice the symbol's
        mean volume in the window; it is recorded when the price moved more
        than 5% from the previous observation.
        """
        now = now or self.clock.now()
        series = self._price_series(now - PRICE_PATTERN_LOOKBACK, now)

        found = []
        for symbol in sorted(series):
            points = [p for p in series[symbol] if p.volume is not None]
            if len(points) < 2:
                continue
            mean_volume = float(np.mean([p.volume for p in points]))
            if mean_volume <= 0:
                continue

            for previous, point in zip(points, points[1:]):
                if point.volume <= mean_volume * VOLUME_SPIKE_RATIO:
                    continue
                change = percent_change(previous.price, point.price)
                if change is None or abs(change) <= VOLUME_SPIKE_MOVE_PERCENT:
                    continue
                found.append(self._volume_entry(symbol, point, mean_volume, change))

        self._write_all(VOLUME_PATTERN, found, now)
        return found

    @staticmethod
    def _volume_entry(symbol: str, point: PricePoint, mean_volume: float, change: float) -> Dict[str, Any]:
        spike_time = point.recorded_at.isoformat()
        return {
            "key": {"stock_symbol": symbol, "spike_time": spike_time},
            "pattern_data": {
                "stock_symbol": symbol,
                "spike_time": spike_time,
                "volume_ratio": round(point.volume / mean_volume, 2),
                "price_change_percent": round(change, 4),
            },
            "accuracy": 0.0,
            "confidence": round(min(100.0, abs(change) * 5), 2),
            "occurrences": 1,
        }

    def analyze_market_conditions(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Classify the last 24 hours of market-wide movement.

        Needs more than 10 moving stocks. One snapshot per calendar day; a
        rerun on the same day overwrites it.
        """
        now = now or self.clock.now()
        changes = series_changes(self._price_series(now - MARKET_CONDITION_WINDOW, now))

        values = np.array(list(changes.values()), dtype=float)
        if values.size <= MARKET_MIN_STOCKS:
            logger.debug(f"Market condition skipped: {values.size} moving stocks")
            return []

        mean_change = float(np.mean(values))
        volatility = float(np.std(values))
        day = now.date().isoformat()
        entry = {
            "key": {"scope": "market", "date": day},
            "pattern_data": {
                "scope": "market",
                "date": day,
                "condition": classify_market_condition(mean_change, volatility),
                "average_change_percent": round(mean_change, 4),
                "volatility": round(volatility, 4),
                "stock_count": int(values.size),
            },
            "accuracy": 0.0,
            "confidence": round(min(100.0, volatility * 10), 2),
            "occurrences": int(values.size),
        }

        self._write_all(MARKET_CONDITION_PATTERN, [entry], now)
        return [entry]

    def analyze_market_patterns(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run the three price-based analyses; returns patterns written per type."""
        now = now or self.clock.now()
        return {
            SECTOR_CORRELATION_PATTERN: len(self.analyze_sector_correlations(now)),
            VOLUME_PATTERN: len(self.analyze_volume_patterns(now)),
            MARKET_CONDITION_PATTERN: len(self.analyze_market_conditions(now)),
        }

    def apply_patterns(self, draft: PredictionDraft, created_at: datetime) -> PredictionDraft:
        """
        Adjust a new prediction by the TIME_BASED patterns matching its creation time.

        Each matching pattern (hour of day, weekday) scales the predicted
        change by pattern accuracy / 100 and raises confidence by 5 (hour) or
        3 (weekday) points, capped at 100. Without a match the draft is
        returned unchanged.
        """
        hour_key = normalize_pattern_data(_hour_key(created_at.hour))
        weekday_key = normalize_pattern_data(_weekday_key(created_at.weekday()))

        with session_scope(self.session_factory) as db:
            repo = PatternRecognitionRepository(db)
            matches = [
                (repo.get_by_key(TIME_BASED_PATTERN, hour_key), HOUR_OF_DAY_CONFIDENCE_BOOST),
                (repo.get_by_key(TIME_BASED_PATTERN, weekday_key), DAY_OF_WEEK_CONFIDENCE_BOOST),
            ]

        matches = [(pattern, boost) for pattern, boost in matches if pattern is not None]
        if not matches:
            return draft

        factor = float(np.prod([pattern.accuracy / 100 for pattern, _ in matches]))
        boost = sum(b for _, b in matches)
        adjusted = draft.model_copy(update={
            "predicted_change_percent": round(draft.predicted_change_percent * factor, 4),
            "confidence": min(100.0, draft.confidence + boost),
            "created_at": created_at,
        })

        logger.debug(
            f"Time patterns adjusted {draft.stock_symbol} prediction: change "
            f"{draft.predicted_change_percent} -> {adjusted.predicted_change_percent}, "
            f"confidence {draft.confidence} -> {adjusted.confidence}"
        )
        return adjusted

    def _price_series(self, start: datetime, end: datetime) -> Dict[str, List[PricePoint]]:
        if self.price_store is None:
            raise ValidationError("Price-based pattern analysis requires a price store")
        return self.price_store.find_price_series(start, end)

    def _write_all(self, pattern_type: str, entries: List[Dict[str, Any]], now: datetime) -> None:
        for entry in entries:
            self._write_snapshot(pattern_type, entry, now)
        logger.info(f"{pattern_type} analysis: {len(entries)} patterns written")

    def _write_snapshot(self, pattern_type: str, entry: Dict[str, Any], now: datetime) -> None:
        """Create or overwrite one recomputed pattern; `entry["key"]` defaults to its pattern_data."""
        pattern_key = normalize_pattern_data(entry.get("key", entry["pattern_data"]))
        lock_key = f"{AGGREGATE_TYPE}:{pattern_type}:{pattern_key}"
        low_confidence = entry["occurrences"] < self.min_sample_count

        def write() -> None:
            with conflict_guard(lock_key), session_scope(self.session_factory) as db:
                repo = PatternRecognitionRepository(db)
                pattern = repo.get_by_key(pattern_type, pattern_key)
                if pattern is None:
                    repo.create(
                        pattern_type=pattern_type,
                        pattern_key=pattern_key,
                        pattern_data=entry["pattern_data"],
                        occurrences=entry["occurrences"],
                        accuracy=entry["accuracy"],
                        confidence=entry["confidence"],
                        low_confidence=low_confidence,
                        last_seen=now,
                    )
                    return
                pattern.pattern_data = entry["pattern_data"]
                pattern.occurrences = entry["occurrences"]
                pattern.accuracy = entry["accuracy"]
                pattern.confidence = entry["confidence"]
                pattern.low_confidence = low_confidence
                pattern.last_seen = now

        with self.locks.hold(lock_key):
            run_with_conflict_retry(
                write,
                max_attempts=self.max_attempts,
                wait_seconds=self.retry_wait_seconds,
                aggregate_key=lock_key,
            )

    def get_patterns_by_type(self, pattern_type: str) -> List[PatternRecognition]:
        with session_scope(self.session_factory) as db:
            return PatternRecognitionRepository(db).find_by_type(pattern_type.upper())

    def find_seen_between(self, pattern_type: str, start: datetime, end: datetime) -> List[PatternRecognition]:
        with session_scope(self.session_factory) as db:
            return PatternRecognitionRepository(db).find_seen_between(pattern_type, start, end)
