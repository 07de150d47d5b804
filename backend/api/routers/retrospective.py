"""
API endpoints for retrospective analysis of material price movements.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import get_engine
from api.schemas.learning import MovementScanRequest, RetrospectiveResponse
from newsimpact.services.learning_engine import LearningEngine


router = APIRouter(prefix="/retrospective", tags=["retrospective"])


@router.post("", response_model=RetrospectiveResponse, status_code=status.HTTP_201_CREATED)
def run_retrospective_scan(
    payload: MovementScanRequest,
    engine: LearningEngine = Depends(get_engine),
):
    """Analyze one movement. A movement already analyzed returns 409."""
    return engine.run_retrospective_scan(payload)


@router.get("", response_model=List[RetrospectiveResponse])
def list_retrospective_analyses(
    symbol: Optional[str] = Query(None),
    missed_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
    engine: LearningEngine = Depends(get_engine),
):
    return engine.list_retrospective_analyses(symbol, missed_only=missed_only, limit=limit)
