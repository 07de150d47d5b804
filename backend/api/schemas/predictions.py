"""Prediction ledger request/response schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from newsimpact.domain.predictions import ActualOutcome, PredictionDraft


class PredictionCreate(PredictionDraft):
    """Request body for recording a prediction"""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "article_id": 42,
                "stock_symbol": "AAPL",
                "predicted_impact": "UP",
                "predicted_change_percent": 5.5,
                "confidence": 72,
                "time_window": "1D",
                "source": "reuters",
                "category": "EARNINGS",
                "sentiment_score": 0.6,
                "impact_level": "HIGH",
            }
        },
    )


class PredictionEvaluate(ActualOutcome):
    """Request body for evaluating a prediction against its observed outcome"""


class PredictionCreated(BaseModel):
    id: int


class PredictionResponse(BaseModel):
    id: int
    article_id: int
    stock_symbol: str
    predicted_impact: str
    predicted_change_percent: float
    confidence: float
    time_window: str
    source: Optional[str] = None
    category: Optional[str] = None
    sentiment_score: Optional[float] = None
    impact_level: Optional[str] = None
    created_at: datetime
    due_at: datetime
    actual_impact: Optional[str] = None
    actual_change_percent: Optional[float] = None
    accuracy: Optional[float] = None
    evaluated_at: Optional[datetime] = None
    aggregates_applied_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PredictionAccuracyStats(BaseModel):
    """Ledger-wide or per-symbol accuracy summary"""
    stock_symbol: Optional[str] = None
    total_predictions: int
    pending_predictions: int
    evaluated_predictions: int
    average_accuracy: Optional[float] = Field(None, description="Mean accuracy (0-100)")
    median_accuracy: Optional[float] = None
    success_rate: Optional[float] = Field(None, description="Share of evaluations at or above the success threshold (0-1)")
    direction_hit_rate: Optional[float] = Field(None, description="Share of evaluations with the predicted direction (0-1)")
    mean_absolute_error: Optional[float] = Field(None, description="Mean |predicted - actual| change (%)")
