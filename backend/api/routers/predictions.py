"""
API endpoints for the prediction ledger.

Record predictions, evaluate them against observed outcomes, and query
accuracy statistics.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import get_engine
from api.schemas.errors import ErrorResponse
from api.schemas.predictions import (
    PredictionAccuracyStats,
    PredictionCreate,
    PredictionCreated,
    PredictionEvaluate,
    PredictionResponse,
)
from newsimpact.services.learning_engine import LearningEngine


router = APIRouter(prefix="/predictions", tags=["predictions"])


@router.post("", response_model=PredictionCreated, status_code=status.HTTP_201_CREATED)
def record_prediction(
    payload: PredictionCreate,
    engine: LearningEngine = Depends(get_engine),
):
    """Record a pending prediction; the deadline is derived from its time window."""
    return PredictionCreated(id=engine.record_prediction(payload))


@router.get("/stats", response_model=PredictionAccuracyStats)
def get_prediction_accuracy_stats(
    symbol: Optional[str] = Query(None, description="Restrict to one stock symbol"),
    engine: LearningEngine = Depends(get_engine),
):
    return engine.get_prediction_accuracy_stats(symbol)


@router.get("/{prediction_id}", response_model=PredictionResponse, responses={404: {"model": ErrorResponse}})
def get_prediction(
    prediction_id: int,
    engine: LearningEngine = Depends(get_engine),
):
    return engine.get_prediction(prediction_id)


@router.post(
    "/{prediction_id}/evaluate",
    response_model=PredictionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def evaluate_prediction(
    prediction_id: int,
    payload: PredictionEvaluate,
    engine: LearningEngine = Depends(get_engine),
):
    """
    Evaluate a due prediction.

    Returns 409 if it was already evaluated and 422 if it is not yet due.
    """
    return engine.evaluate_prediction(prediction_id, payload)
