"""Tests for rule aggregation: running means, idempotency and concurrency."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import numpy as np
import pytest

from newsimpact.domain.predictions import RuleKey
from newsimpact.services.rule_aggregator import RuleAggregator
from newsimpact.utils.errors import AggregateUpdateConflictError, TransientFailureError

from conftest import make_draft, outcome

EARNINGS = RuleKey("CATEGORY", "EARNINGS")


@pytest.fixture
def aggregator(session_factory, clock):
    return RuleAggregator(session_factory, clock=clock, max_attempts=3, retry_wait_seconds=0)


def test_first_evaluation_creates_rule(aggregator):
    assert aggregator.apply_evaluation(1, [EARNINGS], 80.0, 4.0, True) == 1

    rule = aggregator.get_rule("CATEGORY", "EARNINGS")
    assert rule.total_predictions == 1
    assert rule.successful_predictions == 1
    assert rule.success_rate == 1.0
    assert rule.average_accuracy == 80.0
    assert rule.average_change_percent == 4.0
    assert rule.last_updated is not None


def test_running_mean_and_success_rate_invariants(aggregator):
    accuracies = [88.7, 43.0, 100.0, 12.5, 60.0, 59.9, 75.0]
    changes = [6.2, -2.0, 3.0, 10.0, -1.0, 0.5, 2.2]

    for prediction_id, (acc, change) in enumerate(zip(accuracies, changes), start=1):
        aggregator.apply_evaluation(prediction_id, [EARNINGS], acc, change, acc >= 60)

        rule = aggregator.get_rule("CATEGORY", "EARNINGS")
        assert rule.success_rate == pytest.approx(rule.successful_predictions / rule.total_predictions)

    rule = aggregator.get_rule("CATEGORY", "EARNINGS")
    assert rule.total_predictions == len(accuracies)
    assert rule.successful_predictions == 4
    assert rule.average_accuracy == pytest.approx(float(np.mean(accuracies)))
    assert rule.average_change_percent == pytest.approx(float(np.mean(changes)))


def test_same_prediction_is_applied_once(aggregator):
    aggregator.apply_evaluation(1, [EARNINGS], 80.0, 4.0, True)

    assert aggregator.apply_evaluation(1, [EARNINGS], 80.0, 4.0, True) == 0

    rule = aggregator.get_rule("CATEGORY", "EARNINGS")
    assert rule.total_predictions == 1
    assert rule.average_accuracy == 80.0


def test_partial_reapplication_only_adds_missing_keys(aggregator):
    source = RuleKey("SOURCE", "reuters")
    aggregator.apply_evaluation(1, [EARNINGS], 80.0, 4.0, True)

    assert aggregator.apply_evaluation(1, [EARNINGS, source], 80.0, 4.0, True) == 1
    assert aggregator.get_rule("CATEGORY", "EARNINGS").total_predictions == 1
    assert aggregator.get_rule("SOURCE", "reuters").total_predictions == 1


def test_concurrent_updates_to_one_key_are_not_lost(session_factory, clock):
    aggregator = RuleAggregator(session_factory, clock=clock, max_attempts=10, retry_wait_seconds=0.01)
    accuracies = [float(i % 100) for i in range(40)]

    with ThreadPoolExecutor(max_workers=8) as executor:
        futures = [
            executor.submit(aggregator.apply_evaluation, pid, [EARNINGS], acc, 1.0, acc >= 60)
            for pid, acc in enumerate(accuracies, start=1)
        ]
        for future in futures:
            future.result()

    rule = aggregator.get_rule("CATEGORY", "EARNINGS")
    assert rule.total_predictions == len(accuracies)
    assert rule.average_accuracy == pytest.approx(float(np.mean(accuracies)))
    assert rule.successful_predictions == sum(1 for a in accuracies if a >= 60)


def test_concurrent_updates_to_distinct_keys(session_factory, clock):
    aggregator = RuleAggregator(session_factory, clock=clock, max_attempts=10, retry_wait_seconds=0.01)
    keys = [RuleKey("SOURCE", f"feed-{i}") for i in range(5)]

    with ThreadPoolExecutor(max_workers=5) as executor:
        futures = [
            executor.submit(aggregator.apply_evaluation, pid, [keys[pid % 5]], 70.0, 1.0, True)
            for pid in range(1, 26)
        ]
        for future in futures:
            future.result()

    for key in keys:
        assert aggregator.get_rule(key.rule_type, key.rule_value).total_predictions == 5


def test_persistent_conflict_surfaces_transient_failure(aggregator):
    conflict = AggregateUpdateConflictError("busy")

    with patch.object(aggregator, "_apply_one", side_effect=conflict) as apply_one:
        with pytest.raises(TransientFailureError):
            aggregator.apply_evaluation(1, [EARNINGS], 80.0, 4.0, True)

    assert apply_one.call_count == 3
    assert aggregator.get_rule("CATEGORY", "EARNINGS") is None


def test_transient_conflict_is_retried(aggregator):
    real_apply = aggregator._apply_one
    calls = {"n": 0}

    def flaky(*args):
        calls["n"] += 1
        if calls["n"] == 1:
            raise AggregateUpdateConflictError("lost race")
        return real_apply(*args)

    with patch.object(aggregator, "_apply_one", side_effect=flaky):
        assert aggregator.apply_evaluation(1, [EARNINGS], 80.0, 4.0, True) == 1

    assert aggregator.get_rule("CATEGORY", "EARNINGS").total_predictions == 1


def test_top_rules_ranked_by_average_accuracy(aggregator):
    aggregator.apply_evaluation(1, [RuleKey("SOURCE", "a")], 40.0, 1.0, False)
    aggregator.apply_evaluation(2, [RuleKey("SOURCE", "b")], 90.0, 1.0, True)
    aggregator.apply_evaluation(3, [RuleKey("SOURCE", "c")], 70.0, 1.0, True)

    assert [r.rule_value for r in aggregator.get_top_rules(limit=2)] == ["b", "c"]


class TestEngineSaga:
    def test_evaluation_updates_every_rule_type(self, learning_engine, clock):
        prediction_id = learning_engine.record_prediction(
            make_draft(sentiment_score=0.8, impact_level="HIGH")
        )
        clock.advance(days=1)
        learning_engine.evaluate_prediction(prediction_id, outcome(6.2))

        rule_types = {(r.rule_type, r.rule_value) for r in learning_engine.list_rules()}
        assert rule_types == {
            ("SOURCE", "reuters"),
            ("CATEGORY", "EARNINGS"),
            ("SENTIMENT", "POSITIVE"),
            ("IMPACT_LEVEL", "HIGH"),
        }

    def test_failed_aggregate_step_is_reconciled_without_double_counting(self, learning_engine, clock):
        prediction_id = learning_engine.record_prediction(make_draft())
        clock.advance(days=1)

        failure = TransientFailureError("pattern store unavailable")
        with patch.object(learning_engine.patterns, "record_evaluation", side_effect=failure):
            with pytest.raises(TransientFailureError):
                learning_engine.evaluate_prediction(prediction_id, outcome(6.2))

        prediction = learning_engine.get_prediction(prediction_id)
        assert prediction.accuracy is not None
        assert prediction.aggregates_applied_at is None
        assert learning_engine.get_rule("CATEGORY", "EARNINGS").total_predictions == 1

        result = learning_engine.run_evaluation_pass()

        assert result["reconciled"] == 1
        assert learning_engine.get_prediction(prediction_id).aggregates_applied_at is not None
        assert learning_engine.get_rule("CATEGORY", "EARNINGS").total_predictions == 1
        patterns = learning_engine.get_patterns_by_type("PREDICTION_OUTCOME")
        assert len(patterns) == 1
        assert patterns[0].occurrences == 1
