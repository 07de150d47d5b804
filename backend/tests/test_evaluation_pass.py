"""Tests for the periodic evaluation pass over due predictions."""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import T0, make_draft

CREATED = T0 - timedelta(days=1)


def _due_prediction(engine, seed, symbol="AAPL", start_price=100.0, end_price=106.0, **draft):
    if start_price is not None:
        seed.price(symbol, start_price, CREATED)
    if end_price is not None:
        seed.price(symbol, end_price, T0)
    return engine.record_prediction(make_draft(stock_symbol=symbol, created_at=CREATED, **draft))


def test_due_prediction_with_prices_is_evaluated(learning_engine, seed):
    prediction_id = _due_prediction(learning_engine, seed)

    result = learning_engine.run_evaluation_pass()

    assert result["evaluated"] == 1
    assert result["failures"] == []
    prediction = learning_engine.get_prediction(prediction_id)
    assert prediction.actual_impact == "UP"
    assert prediction.actual_change_percent == pytest.approx(6.0)
    assert prediction.accuracy == pytest.approx(100 - 0.5 / 6.0 * 100)
    assert prediction.evaluated_at == T0
    assert prediction.aggregates_applied_at is not None


def test_small_move_is_flat(learning_engine, seed):
    prediction_id = _due_prediction(learning_engine, seed, end_price=101.0)

    learning_engine.run_evaluation_pass()

    prediction = learning_engine.get_prediction(prediction_id)
    assert prediction.actual_impact == "FLAT"
    assert prediction.accuracy == pytest.approx(50 - abs(5.5 - 1.0))


def test_missing_price_data_leaves_prediction_pending(learning_engine, seed):
    prediction_id = _due_prediction(learning_engine, seed, end_price=None)

    result = learning_engine.run_evaluation_pass()

    assert result["evaluated"] == 0
    assert result["awaiting_price_data"] == 1
    assert learning_engine.get_prediction(prediction_id).accuracy is None


def test_predictions_not_yet_due_are_ignored(learning_engine, seed):
    seed.price("AAPL", 100.0, T0)
    prediction_id = learning_engine.record_prediction(make_draft(created_at=T0 - timedelta(hours=2)))

    result = learning_engine.run_evaluation_pass()

    assert result["evaluated"] == 0
    assert result["awaiting_price_data"] == 0
    assert learning_engine.get_prediction(prediction_id).accuracy is None


def test_second_pass_does_not_reevaluate(learning_engine, seed, clock):
    prediction_id = _due_prediction(learning_engine, seed)
    learning_engine.run_evaluation_pass()
    first = learning_engine.get_prediction(prediction_id)

    clock.advance(hours=1)
    result = learning_engine.run_evaluation_pass()

    assert result["evaluated"] == 0
    assert learning_engine.get_prediction(prediction_id).evaluated_at == first.evaluated_at
    assert learning_engine.get_rule("CATEGORY", "EARNINGS").total_predictions == 1


def test_failure_is_recorded_and_pass_continues(learning_engine, seed):
    good = _due_prediction(learning_engine, seed, symbol="AAPL")
    bad = _due_prediction(learning_engine, seed, symbol="MSFT")
    real_change = learning_engine.price_store.find_price_change

    def flaky_feed(symbol, start, end):
        if symbol == "MSFT":
            raise RuntimeError("price feed unavailable")
        return real_change(symbol, start, end)

    with patch.object(learning_engine.price_store, "find_price_change", side_effect=flaky_feed):
        result = learning_engine.run_evaluation_pass()

    assert result["evaluated"] == 1
    assert result["failures"] == [
        {"prediction_id": bad, "stock_symbol": "MSFT", "error": "price feed unavailable"}
    ]
    assert learning_engine.get_prediction(good).accuracy is not None
    assert learning_engine.get_prediction(bad).accuracy is None


def test_cancelled_pass_evaluates_nothing(learning_engine, seed):
    prediction_id = _due_prediction(learning_engine, seed)
    cancel = threading.Event()
    cancel.set()

    result = learning_engine.run_evaluation_pass(cancel_event=cancel)

    assert result["cancelled"] is True
    assert result["evaluated"] == 0
    assert learning_engine.get_prediction(prediction_id).accuracy is None


def test_many_symbols_fold_into_shared_rules(learning_engine, seed):
    symbols = ["AAPL", "MSFT", "TSLA", "NVDA", "AMZN", "META"]
    for symbol in symbols:
        _due_prediction(learning_engine, seed, symbol=symbol)
        _due_prediction(learning_engine, seed, symbol=symbol, start_price=None, end_price=None)

    result = learning_engine.run_evaluation_pass()

    assert result["evaluated"] == 2 * len(symbols)
    rule = learning_engine.get_rule("CATEGORY", "EARNINGS")
    assert rule.total_predictions == 2 * len(symbols)
    assert rule.average_accuracy == pytest.approx(100 - 0.5 / 6.0 * 100)
    [pattern] = learning_engine.get_patterns_by_type("PREDICTION_OUTCOME")
    assert pattern.occurrences == 2 * len(symbols)
