"""Tests for pattern recognition."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import numpy as np
import pytest

from newsimpact.domain.predictions import (
    MARKET_CONDITION_PATTERN,
    PREDICTION_OUTCOME_PATTERN,
    SECTOR_CORRELATION_PATTERN,
    TIME_BASED_PATTERN,
    VOLUME_PATTERN,
)
from newsimpact.services.learning_engine import build_engine
from newsimpact.services.market_data import SqlPriceStore
from newsimpact.services.pattern_recognizer import PatternRecognizer, classify_market_condition
from newsimpact.utils.errors import ValidationError

from conftest import T0, make_draft, outcome

BAG = {"category": "EARNINGS", "predicted_impact": "UP", "time_window": "1D"}


@pytest.fixture
def recognizer(session_factory, clock):
    return PatternRecognizer(session_factory, clock=clock, min_sample_count=5, retry_wait_seconds=0)


def test_first_sample_seeds_low_confidence_pattern(recognizer):
    assert recognizer.record_evaluation(1, BAG, accuracy=80.0, confidence=70.0)

    [pattern] = recognizer.get_patterns_by_type(PREDICTION_OUTCOME_PATTERN)
    assert pattern.occurrences == 1
    assert pattern.accuracy == 80.0
    assert pattern.confidence == 70.0
    assert pattern.low_confidence is True
    assert pattern.pattern_data == BAG


def test_running_means_and_confidence_flag(recognizer, clock):
    accuracies = [80.0, 60.0, 90.0, 70.0, 100.0]
    confidences = [50.0, 60.0, 70.0, 80.0, 90.0]

    for pid, (acc, conf) in enumerate(zip(accuracies, confidences), start=1):
        clock.advance(minutes=5)
        recognizer.record_evaluation(pid, BAG, acc, conf)

    [pattern] = recognizer.get_patterns_by_type(PREDICTION_OUTCOME_PATTERN)
    assert pattern.occurrences == 5
    assert pattern.accuracy == pytest.approx(80.0)
    assert pattern.confidence == pytest.approx(70.0)
    assert pattern.low_confidence is False
    assert pattern.last_seen == clock.now()


def test_equal_bags_in_any_key_order_share_a_pattern(recognizer):
    recognizer.record_evaluation(1, BAG, 80.0, 70.0)
    recognizer.record_evaluation(2, dict(reversed(list(BAG.items()))), 60.0, 50.0)

    [pattern] = recognizer.get_patterns_by_type(PREDICTION_OUTCOME_PATTERN)
    assert pattern.occurrences == 2


def test_distinct_bags_are_distinct_patterns(recognizer):
    recognizer.record_evaluation(1, BAG, 80.0, 70.0)
    recognizer.record_evaluation(2, {**BAG, "predicted_impact": "DOWN"}, 80.0, 70.0)

    assert len(recognizer.get_patterns_by_type(PREDICTION_OUTCOME_PATTERN)) == 2


def test_repeat_of_same_prediction_is_ignored(recognizer):
    recognizer.record_evaluation(1, BAG, 80.0, 70.0)

    assert recognizer.record_evaluation(1, BAG, 80.0, 70.0) is False
    [pattern] = recognizer.get_patterns_by_type(PREDICTION_OUTCOME_PATTERN)
    assert pattern.occurrences == 1


def test_concurrent_updates_to_one_bag_are_not_lost(session_factory, clock):
    recognizer = PatternRecognizer(session_factory, clock=clock, max_attempts=10, retry_wait_seconds=0.01)
    accuracies = [float((i * 7) % 100) for i in range(40)]

    with ThreadPoolExecutor(max_workers=8) as executor:
        futures = [
            executor.submit(recognizer.record_evaluation, pid, dict(BAG), acc, 50.0 + pid % 10)
            for pid, acc in enumerate(accuracies, start=1)
        ]
        for future in futures:
            future.result()

    [pattern] = recognizer.get_patterns_by_type(PREDICTION_OUTCOME_PATTERN)
    assert pattern.occurrences == len(accuracies)
    assert pattern.accuracy == pytest.approx(float(np.mean(accuracies)))
    assert pattern.confidence == pytest.approx(float(np.mean([50.0 + pid % 10 for pid in range(1, 41)])))
    assert pattern.low_confidence is False


def test_engine_uses_unknown_category_when_missing(learning_engine, clock):
    prediction_id = learning_engine.record_prediction(make_draft(category=None))
    clock.advance(days=1)
    learning_engine.evaluate_prediction(prediction_id, outcome(6.0))

    [pattern] = learning_engine.get_patterns_by_type("prediction_outcome")
    assert pattern.pattern_data["category"] == "UNKNOWN"


class TestTimeBasedPatterns:
    def _evaluate_many(self, learning_engine, count, created_at, actual_change):
        for _ in range(count):
            pid = learning_engine.record_prediction(
                make_draft(created_at=created_at, predicted_change_percent=5.0, time_window="1H")
            )
            learning_engine.evaluate_prediction(pid, outcome(actual_change), now=created_at + timedelta(hours=1))

    def test_accurate_hour_and_weekday_qualify(self, learning_engine):
        # Monday 10:00, exact predictions
        self._evaluate_many(learning_engine, 11, T0 - timedelta(days=7, hours=2), 5.0)

        found = learning_engine.analyze_time_based_patterns(T0)

        dims = {entry["pattern_data"]["dimension"]: entry for entry in found}
        assert dims["hour_of_day"]["pattern_data"]["hour"] == 10
        assert dims["hour_of_day"]["occurrences"] == 11
        assert dims["day_of_week"]["pattern_data"]["day"] == "Monday"
        assert dims["day_of_week"]["accuracy"] == pytest.approx(100.0)
        assert len(learning_engine.get_patterns_by_type(TIME_BASED_PATTERN)) == 2

    def test_sample_size_bounds_are_exclusive(self, learning_engine):
        # 10 samples: weekday qualifies (> 5), hour does not (needs > 10)
        self._evaluate_many(learning_engine, 10, T0 - timedelta(days=7, hours=2), 5.0)

        found = learning_engine.analyze_time_based_patterns(T0)

        assert [entry["pattern_data"]["dimension"] for entry in found] == ["day_of_week"]

    def test_inaccurate_buckets_do_not_qualify(self, learning_engine):
        self._evaluate_many(learning_engine, 12, T0 - timedelta(days=7, hours=2), 10.0)

        assert learning_engine.analyze_time_based_patterns(T0) == []

    def test_rerun_updates_in_place(self, learning_engine):
        self._evaluate_many(learning_engine, 11, T0 - timedelta(days=7, hours=2), 5.0)

        learning_engine.analyze_time_based_patterns(T0)
        learning_engine.analyze_time_based_patterns(T0)

        patterns = learning_engine.get_patterns_by_type(TIME_BASED_PATTERN)
        assert len(patterns) == 2
        assert all(p.occurrences == 11 for p in patterns)

    def test_predictions_outside_lookback_are_ignored(self, learning_engine):
        self._evaluate_many(learning_engine, 11, T0 - timedelta(days=45), 5.0)

        assert learning_engine.analyze_time_based_patterns(T0) == []


class TestApplyPatterns:
    @pytest.fixture
    def monday_ten(self, learning_engine):
        # eleven Monday 10:00 predictions at ~90.9 accuracy
        TestTimeBasedPatterns()._evaluate_many(learning_engine, 11, T0 - timedelta(days=7, hours=2), 5.5)
        learning_engine.analyze_time_based_patterns(T0)

    def _record(self, learning_engine, created_at):
        pid = learning_engine.record_prediction(make_draft(created_at=created_at, predicted_change_percent=5.0))
        return learning_engine.get_prediction(pid)

    def test_hour_and_weekday_match(self, learning_engine, monday_ten):
        prediction = self._record(learning_engine, T0 - timedelta(hours=2))

        assert prediction.predicted_change_percent == pytest.approx(5.0 * 0.9091 ** 2, abs=1e-3)
        assert prediction.confidence == 78.0

    def test_hour_only_match(self, learning_engine, monday_ten):
        # Tuesday 10:00
        prediction = self._record(learning_engine, T0 + timedelta(days=1, hours=-2))

        assert prediction.predicted_change_percent == pytest.approx(5.0 * 0.9091, abs=1e-3)
        assert prediction.confidence == 75.0

    def test_no_match_leaves_prediction_unchanged(self, learning_engine, monday_ten):
        # Tuesday 15:00
        prediction = self._record(learning_engine, T0 + timedelta(days=1, hours=3))

        assert prediction.predicted_change_percent == 5.0
        assert prediction.confidence == 70.0

    def test_adjustment_can_be_disabled(self, session_factory, clock, test_settings, monday_ten):
        engine = build_engine(session_factory, clock=clock, config=test_settings.model_copy(update={"apply_time_patterns": False}))

        prediction = self._record(engine, T0 - timedelta(hours=2))

        assert prediction.predicted_change_percent == 5.0
        assert prediction.confidence == 70.0


class TestMarketPatterns:
    @pytest.fixture
    def market(self, session_factory, clock):
        return PatternRecognizer(
            session_factory,
            clock=clock,
            retry_wait_seconds=0,
            price_store=SqlPriceStore(session_factory),
            sector_map={"akbnk": "BANKING", "GARAN": "BANKING", "ISCTR": "BANKING", "YKBNK": "BANKING"},
        )

    def _move(self, seed, symbol, change, start, end=T0 - timedelta(hours=1)):
        seed.price(symbol, 100.0, start)
        seed.price(symbol, 100.0 + change, end)

    def test_sector_trend_is_recorded(self, market, seed):
        for symbol in ("AKBNK", "GARAN", "ISCTR", "YKBNK"):
            self._move(seed, symbol, 5.0, T0 - timedelta(days=6))
        for symbol in ("THYAO", "TUPRS"):
            self._move(seed, symbol, 9.0, T0 - timedelta(days=6))

        [entry] = market.analyze_sector_correlations()

        assert entry["pattern_data"]["sector"] == "BANKING"
        assert entry["pattern_data"]["trend"] == "POSITIVE"
        assert entry["pattern_data"]["stock_count"] == 4
        assert entry["confidence"] == pytest.approx(50.0)
        [pattern] = market.get_patterns_by_type(SECTOR_CORRELATION_PATTERN)
        assert pattern.occurrences == 4
        assert pattern.low_confidence is True

    def test_quiet_sector_is_not_recorded(self, market, seed):
        for symbol in ("AKBNK", "GARAN", "ISCTR", "YKBNK"):
            self._move(seed, symbol, 1.0, T0 - timedelta(days=6))

        assert market.analyze_sector_correlations() == []

    def test_volume_spike_with_large_move(self, market, seed):
        for symbol, spike_price in (("AAPL", 110.0), ("MSFT", 102.0)):
            for days in (4, 3, 2, 1):
                seed.price(symbol, 100.0, T0 - timedelta(days=days), volume=100.0)
            seed.price(symbol, spike_price, T0 - timedelta(hours=1), volume=1000.0)

        [entry] = market.analyze_volume_patterns()

        assert entry["pattern_data"]["stock_symbol"] == "AAPL"
        assert entry["pattern_data"]["volume_ratio"] == pytest.approx(3.57)
        assert entry["pattern_data"]["price_change_percent"] == pytest.approx(10.0)
        assert entry["confidence"] == pytest.approx(50.0)

    def test_market_condition_snapshot(self, market, seed):
        for i in range(11):
            self._move(seed, f"S{i}", 3.0, T0 - timedelta(hours=20))

        [entry] = market.analyze_market_conditions()
        market.analyze_market_conditions()

        assert entry["pattern_data"]["condition"] == "BULLISH"
        assert entry["pattern_data"]["stock_count"] == 11
        assert len(market.get_patterns_by_type(MARKET_CONDITION_PATTERN)) == 1

    def test_market_condition_needs_breadth(self, market, seed):
        for i in range(10):
            self._move(seed, f"S{i}", 3.0, T0 - timedelta(hours=20))

        assert market.analyze_market_conditions() == []

    @pytest.mark.parametrize(
        "mean_change, volatility, condition",
        [(0.5, 1.0, "NORMAL"), (0.5, 4.0, "HIGH_VOLATILITY"), (3.0, 4.0, "BULLISH"), (-3.0, 1.0, "BEARISH")],
    )
    def test_condition_classification(self, mean_change, volatility, condition):
        assert classify_market_condition(mean_change, volatility) == condition

    def test_requires_a_price_store(self, recognizer):
        with pytest.raises(ValidationError):
            recognizer.analyze_market_patterns()

    def test_engine_runs_all_analyses(self, learning_engine):
        assert learning_engine.analyze_market_patterns() == {
            SECTOR_CORRELATION_PATTERN: 0,
            VOLUME_PATTERN: 0,
            MARKET_CONDITION_PATTERN: 0,
        }
