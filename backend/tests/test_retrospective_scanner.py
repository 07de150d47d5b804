"""Tests for retrospective analysis of material price movements."""

from datetime import date, datetime, timedelta, timezone

import pytest

from newsimpact.utils.errors import DuplicateAnalysisError, ValidationError

from conftest import T0, make_draft


def _movement(percent=6.0, symbol="AAPL", **overrides):
    movement = {
        "stock_symbol": symbol,
        "movement_percent": percent,
        "start_time": T0 - timedelta(hours=2),
        "end_time": T0,
    }
    movement.update(overrides)
    return movement


class TestScan:
    def test_uncovered_move_without_news(self, learning_engine):
        analysis = learning_engine.run_retrospective_scan(_movement())

        assert analysis.missed_opportunity is True
        assert analysis.missed_reasons == ["No preceding news coverage"]
        assert analysis.preceding_news_count == 0
        assert analysis.existing_predictions_count == 0
        assert analysis.retrospective_accuracy == 0.0
        assert analysis.analysis_date == T0.date()
        assert analysis.analysis_data["missed_reason_code"] == "NO_PRECEDING_NEWS"

    def test_news_without_extracted_mention(self, learning_engine, seed):
        seed.article("AAPL beats estimates", T0 - timedelta(hours=5))

        analysis = learning_engine.run_retrospective_scan(_movement())

        assert analysis.preceding_news_count == 1
        assert analysis.missed_reasons == ["News present but no stock mention extracted"]

    def test_weak_sentiment_with_mentions(self, learning_engine, seed):
        seed.article("Supplier update", T0 - timedelta(hours=5), mentions=["AAPL"], sentiment_score=0.1)

        analysis = learning_engine.run_retrospective_scan(_movement())

        assert analysis.missed_reasons == ["Weak sentiment signals"]

    def test_symbol_must_appear_as_a_whole_token(self, learning_engine, seed):
        seed.article("GENERAL merger talk lifts markets", T0 - timedelta(hours=5))
        seed.article("GE shares jump on guidance", T0 - timedelta(hours=4))
        seed.article("Conglomerate update", T0 - timedelta(hours=3), mentions=["GE"])

        analysis = learning_engine.run_retrospective_scan(_movement(symbol="GE"))

        assert analysis.preceding_news_count == 2

    def test_offset_timestamps_are_compared_in_utc(self, learning_engine):
        # created 08:00 UTC, one hour after the move began at 12:00+05:00
        learning_engine.record_prediction(make_draft(created_at=T0 - timedelta(hours=4)))
        plus_five = timezone(timedelta(hours=5))

        analysis = learning_engine.run_retrospective_scan(
            _movement(
                start_time=datetime(2024, 3, 4, 12, 0, tzinfo=plus_five),
                end_time=datetime(2024, 3, 4, 17, 0, tzinfo=plus_five),
            )
        )

        assert analysis.existing_predictions_count == 0
        assert analysis.missed_opportunity is True
        assert analysis.movement_start_time == datetime(2024, 3, 4, 7, 0)
        assert analysis.movement_end_time == datetime(2024, 3, 4, 12, 0)

    def test_news_outside_lookback_or_about_other_symbols_is_ignored(self, learning_engine, seed):
        seed.article("AAPL last week", T0 - timedelta(days=5), mentions=["AAPL"])
        seed.article("MSFT guidance", T0 - timedelta(hours=5), mentions=["MSFT"])

        analysis = learning_engine.run_retrospective_scan(_movement())

        assert analysis.preceding_news_count == 0

    def test_covered_in_direction(self, learning_engine):
        learning_engine.record_prediction(make_draft(created_at=T0 - timedelta(hours=10), confidence=70))

        analysis = learning_engine.run_retrospective_scan(_movement(6.0))

        assert analysis.missed_opportunity is False
        assert analysis.missed_reasons == []
        assert analysis.existing_predictions_count == 1
        assert analysis.retrospective_accuracy == pytest.approx(100.0)

    def test_covered_against_direction_scales_by_confidence(self, learning_engine):
        learning_engine.record_prediction(
            make_draft(created_at=T0 - timedelta(hours=10), predicted_impact="DOWN",
                       predicted_change_percent=-4.0, confidence=80)
        )

        analysis = learning_engine.run_retrospective_scan(_movement(6.0))

        assert analysis.retrospective_accuracy == pytest.approx(20.0)

    def test_accuracy_is_mean_over_covering_predictions(self, learning_engine):
        learning_engine.record_prediction(make_draft(created_at=T0 - timedelta(hours=10)))
        learning_engine.record_prediction(
            make_draft(created_at=T0 - timedelta(hours=8), predicted_impact="DOWN",
                       predicted_change_percent=-4.0, confidence=80)
        )

        analysis = learning_engine.run_retrospective_scan(_movement(-7.5))

        # DOWN move: the UP call scores 100 * (1 - 0.7), the DOWN call 100
        assert analysis.retrospective_accuracy == pytest.approx((30.0 + 100.0) / 2)

    def test_predictions_after_move_start_do_not_cover_it(self, learning_engine):
        learning_engine.record_prediction(make_draft(created_at=T0 - timedelta(hours=1)))

        analysis = learning_engine.run_retrospective_scan(_movement())

        assert analysis.missed_opportunity is True

    def test_below_threshold_is_rejected(self, learning_engine):
        with pytest.raises(ValidationError):
            learning_engine.run_retrospective_scan(_movement(3.0))

        assert learning_engine.list_retrospective_analyses() == []

    def test_negative_material_move_is_analyzed(self, learning_engine):
        analysis = learning_engine.run_retrospective_scan(_movement(-5.0))
        assert analysis.movement_percent == -5.0

    def test_repeat_scan_is_rejected(self, learning_engine):
        first = learning_engine.run_retrospective_scan(_movement())

        with pytest.raises(DuplicateAnalysisError):
            learning_engine.run_retrospective_scan(_movement())

        [only] = learning_engine.list_retrospective_analyses()
        assert only.id == first.id

    def test_explicit_analysis_date(self, learning_engine):
        analysis = learning_engine.run_retrospective_scan(_movement(analysis_date="2024-03-01"))
        assert analysis.analysis_date == date(2024, 3, 1)

    def test_malformed_movement(self, learning_engine):
        with pytest.raises(ValidationError):
            learning_engine.run_retrospective_scan(_movement(end_time=T0 - timedelta(hours=5)))


class TestRetrospectivePass:
    def _seed_prices(self, seed):
        seed.price("AAPL", 100.0, T0 - timedelta(hours=20))
        seed.price("AAPL", 103.0, T0 - timedelta(hours=10))
        seed.price("AAPL", 107.0, T0 - timedelta(hours=2))
        seed.price("MSFT", 100.0, T0 - timedelta(hours=20))
        seed.price("MSFT", 101.0, T0 - timedelta(hours=2))

    def test_pass_analyzes_material_moves_only(self, learning_engine, seed):
        self._seed_prices(seed)

        result = learning_engine.run_retrospective_pass(T0 - timedelta(hours=24), T0)

        assert result == {"movements": 1, "analyzed": 1, "missed": 1, "duplicates": 0, "failures": []}
        [analysis] = learning_engine.list_retrospective_analyses()
        assert analysis.stock_symbol == "AAPL"
        assert analysis.movement_percent == pytest.approx(7.0)

    def test_second_pass_counts_duplicates(self, learning_engine, seed):
        self._seed_prices(seed)
        learning_engine.run_retrospective_pass(T0 - timedelta(hours=24), T0)

        result = learning_engine.run_retrospective_pass(T0 - timedelta(hours=24), T0)

        assert result["analyzed"] == 0
        assert result["duplicates"] == 1
        assert len(learning_engine.list_retrospective_analyses()) == 1

    def test_default_window_is_trailing_lookback(self, learning_engine, seed):
        self._seed_prices(seed)

        assert learning_engine.run_retrospective_pass()["analyzed"] == 1


def test_list_filters(learning_engine):
    learning_engine.record_prediction(make_draft(created_at=T0 - timedelta(hours=10)))
    learning_engine.run_retrospective_scan(_movement(6.0))
    learning_engine.run_retrospective_scan(_movement(8.0, symbol="TSLA"))

    assert [a.stock_symbol for a in learning_engine.list_retrospective_analyses(missed_only=True)] == ["TSLA"]
    assert len(learning_engine.list_retrospective_analyses(symbol="aapl")) == 1
    assert len(learning_engine.list_retrospective_analyses(limit=1)) == 1
