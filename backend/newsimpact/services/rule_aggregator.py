"""
Rule aggregator: running accuracy statistics per (rule_type, rule_value).

Each rule holds only (count, mean) pairs and is updated in O(1) per
evaluated prediction. An update is applied at most once per
(prediction, rule key): the marker row in `aggregate_applications` is
written in the same transaction as the rule change.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import sessionmaker

from newsimpact.db.models import PredictionRule
from newsimpact.db.repositories import AggregateApplicationRepository, PredictionRuleRepository
from newsimpact.db.session import session_scope
from newsimpact.domain.predictions import RuleKey, running_mean, success_rate
from newsimpact.services.locks import KeyedLockRegistry
from newsimpact.services.retry import conflict_guard, run_with_conflict_retry
from newsimpact.utils.datetime import Clock, SystemClock

AGGREGATE_TYPE = "RULE"


class RuleAggregator:
    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Optional[Clock] = None,
        locks: Optional[KeyedLockRegistry] = None,
        max_attempts: int = 5,
        retry_wait_seconds: float = 0.05,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLockRegistry()
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds

    def apply_evaluation(
        self,
        prediction_id: int,
        rule_keys: Sequence[RuleKey],
        accuracy: float,
        change_percent: float,
        success: bool,
    ) -> int:
        """
        Fold one evaluated prediction into every applicable rule.

        Returns the number of rules actually updated; keys already applied
        for this prediction are skipped.

        Raises:
            TransientFailureError: a key stayed contended past the retry budget
        """
        applied = 0
        for key in rule_keys:
            lock_key = f"{AGGREGATE_TYPE}:{key.as_string()}"
            with self.locks.hold(lock_key):
                if run_with_conflict_retry(
                    self._apply_one,
                    prediction_id,
                    key,
                    accuracy,
                    change_percent,
                    success,
                    max_attempts=self.max_attempts,
                    wait_seconds=self.retry_wait_seconds,
                    aggregate_key=lock_key,
                ):
                    applied += 1
        return applied

    def _apply_one(
        self,
        prediction_id: int,
        key: RuleKey,
        accuracy: float,
        change_percent: float,
        success: bool,
    ) -> bool:
        key_str = key.as_string()
        now = self.clock.now()

        with conflict_guard(f"{AGGREGATE_TYPE}:{key_str}"), session_scope(self.session_factory) as db:
            applications = AggregateApplicationRepository(db)
            if applications.exists(prediction_id, AGGREGATE_TYPE, key_str):
                logger.debug(f"Rule {key_str} already reflects prediction {prediction_id}")
                return False

            repo = PredictionRuleRepository(db)
            rule = repo.get_by_key(key.rule_type, key.rule_value) or repo.create(key.rule_type, key.rule_value)

            count = rule.total_predictions
            rule.average_accuracy = running_mean(rule.average_accuracy, accuracy, count)
            rule.average_change_percent = running_mean(rule.average_change_percent, change_percent, count)
            rule.total_predictions = count + 1
            if success:
                rule.successful_predictions += 1
            rule.success_rate = success_rate(rule.successful_predictions, rule.total_predictions)
            rule.last_updated = now

            applications.record(prediction_id, AGGREGATE_TYPE, key_str, now)

        logger.debug(
            f"Updated rule {key_str}: n={rule.total_predictions}, "
            f"accuracy={rule.average_accuracy:.1f}, success_rate={rule.success_rate:.2f}"
        )
        return True

    def get_rule(self, rule_type: str, rule_value: str) -> Optional[PredictionRule]:
        with session_scope(self.session_factory) as db:
            return PredictionRuleRepository(db).get_by_key(rule_type.upper(), rule_value)

    def list_rules(self, rule_type: Optional[str] = None) -> List[PredictionRule]:
        with session_scope(self.session_factory) as db:
            return PredictionRuleRepository(db).find_by_type(rule_type.upper() if rule_type else None)

    def get_top_rules(self, limit: int = 10, min_predictions: int = 1) -> List[PredictionRule]:
        """Rules ranked by average accuracy, ties broken by sample size."""
        with session_scope(self.session_factory) as db:
            return PredictionRuleRepository(db).find_top_performing(limit=limit, min_predictions=min_predictions)

    def find_updated_between(self, start: datetime, end: datetime) -> List[PredictionRule]:
        with session_scope(self.session_factory) as db:
            return PredictionRuleRepository(db).find_updated_between(start, end)
