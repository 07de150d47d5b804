"""
Domain models for predictions with Pydantic validation and accuracy scoring.

This module contains pure data models and functions without database or
external dependencies.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImpactDirection(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    FLAT = "FLAT"


class RuleType(str, Enum):
    SOURCE = "SOURCE"
    CATEGORY = "CATEGORY"
    SENTIMENT = "SENTIMENT"
    IMPACT_LEVEL = "IMPACT_LEVEL"


PREDICTION_OUTCOME_PATTERN = "PREDICTION_OUTCOME"
TIME_BASED_PATTERN = "TIME_BASED"
SECTOR_CORRELATION_PATTERN = "SECTOR_CORRELATION"
VOLUME_PATTERN = "VOLUME_PATTERN"
MARKET_CONDITION_PATTERN = "MARKET_CONDITION"

UNKNOWN_CATEGORY = "UNKNOWN"


class PredictionDraft(BaseModel):
    """Input model for recording a new prediction against an article."""

    model_config = ConfigDict(str_strip_whitespace=True)

    article_id: int = Field(..., ge=1)
    stock_symbol: str = Field(..., min_length=1, max_length=16)
    predicted_impact: ImpactDirection
    predicted_change_percent: float = Field(..., ge=-100, le=100, allow_inf_nan=False)
    confidence: float = Field(..., ge=0, le=100, allow_inf_nan=False)
    time_window: str = Field(default="1D", description="Symbolic horizon, e.g. 1H, 4H, 1D")

    # Article attributes used to key rules and patterns
    source: Optional[str] = Field(None, max_length=255)
    category: Optional[str] = Field(None, max_length=100)
    sentiment_score: Optional[float] = Field(None, ge=-1, le=1)
    impact_level: Optional[str] = Field(None, max_length=20)

    created_at: Optional[datetime] = Field(None, description="Defaults to the engine clock")

    @field_validator("stock_symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.upper()

    @field_validator("time_window")
    @classmethod
    def normalize_time_window(cls, v: str) -> str:
        return v.upper()

    @field_validator("impact_level")
    @classmethod
    def normalize_impact_level(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class ActualOutcome(BaseModel):
    """Observed price movement used to evaluate a prediction."""

    actual_impact: ImpactDirection
    actual_change_percent: float = Field(..., ge=-100, allow_inf_nan=False)


class RuleKey(NamedTuple):
    rule_type: str
    rule_value: str

    def as_string(self) -> str:
        return f"{self.rule_type}:{self.rule_value}"


def compute_accuracy(
    predicted_impact: str,
    predicted_change_percent: float,
    actual_impact: str,
    actual_change_percent: float,
    epsilon: float = 0.01,
) -> float:
    """
    Score a prediction against the observed move, 0-100.

    Matching direction scores relative magnitude error:
        100 - min(100, |predicted - actual| / max(|actual|, epsilon) * 100)
    Wrong direction is capped at 50 and loses one point per percent of error:
        max(0, 50 - |predicted - actual|)

    Examples:
        >>> round(compute_accuracy("UP", 5.5, "UP", 6.2), 1)
        88.7
        >>> compute_accuracy("UP", 5.0, "DOWN", -2.0)
        43.0
    """
    diff = abs(predicted_change_percent - actual_change_percent)

    if _direction_value(predicted_impact) == _direction_value(actual_impact):
        relative_error = diff / max(abs(actual_change_percent), epsilon) * 100
        return 100.0 - min(100.0, relative_error)

    return max(0.0, 50.0 - diff)


def running_mean(old_mean: float, value: float, old_count: int) -> float:
    """Incremental mean: old + (value - old) / (n + 1)."""
    return old_mean + (value - old_mean) / (old_count + 1)


def success_rate(successful: int, total: int) -> float:
    return successful / total if total else 0.0


def determine_actual_impact(change_percent: float, flat_band: float = 2.0) -> ImpactDirection:
    """Classify an observed move; anything within +/- band is FLAT."""
    if change_percent > flat_band:
        return ImpactDirection.UP
    if change_percent < -flat_band:
        return ImpactDirection.DOWN
    return ImpactDirection.FLAT


def direction_of_move(change_percent: float) -> ImpactDirection:
    """Sign of a move with no flat band."""
    if change_percent > 0:
        return ImpactDirection.UP
    if change_percent < 0:
        return ImpactDirection.DOWN
    return ImpactDirection.FLAT


def sentiment_bucket(score: float) -> str:
    if score > 0.3:
        return "POSITIVE"
    if score < -0.3:
        return "NEGATIVE"
    return "NEUTRAL"


def derive_rule_keys(prediction: Any) -> List[RuleKey]:
    """
    Rule keys a prediction contributes to.

    Works on anything exposing source / category / sentiment_score /
    impact_level attributes (ORM rows or drafts). Missing attributes
    contribute no key.
    """
    keys: List[RuleKey] = []

    source = getattr(prediction, "source", None)
    if source:
        keys.append(RuleKey(RuleType.SOURCE.value, str(source)))

    category = getattr(prediction, "category", None)
    if category:
        keys.append(RuleKey(RuleType.CATEGORY.value, category))

    sentiment = getattr(prediction, "sentiment_score", None)
    if sentiment is not None:
        keys.append(RuleKey(RuleType.SENTIMENT.value, sentiment_bucket(sentiment)))

    impact_level = getattr(prediction, "impact_level", None)
    if impact_level:
        keys.append(RuleKey(RuleType.IMPACT_LEVEL.value, impact_level))

    return keys


def prediction_outcome_bag(prediction: Any) -> Dict[str, Any]:
    """Attribute combination tracked by the PREDICTION_OUTCOME pattern."""
    return {
        "category": getattr(prediction, "category", None) or UNKNOWN_CATEGORY,
        "predicted_impact": _direction_value(getattr(prediction, "predicted_impact")),
        "time_window": getattr(prediction, "time_window"),
    }


def normalize_pattern_data(pattern_data: Dict[str, Any]) -> str:
    """Canonical key for an attribute bag: sorted-key compact JSON."""
    return json.dumps(pattern_data, sort_keys=True, separators=(",", ":"), default=str)


def _direction_value(direction: Any) -> str:
    if isinstance(direction, ImpactDirection):
        return direction.value
    return str(direction).upper()
