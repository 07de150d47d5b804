"""
API endpoints for learned rules and recognized patterns.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_engine
from api.schemas.learning import PatternResponse, RuleResponse
from api.utils.exceptions import ResourceNotFoundException
from newsimpact.domain.predictions import PREDICTION_OUTCOME_PATTERN
from newsimpact.services.learning_engine import LearningEngine


router = APIRouter(tags=["learning"])


@router.get("/rules", response_model=List[RuleResponse])
def list_rules(
    type: Optional[str] = Query(None, description="SOURCE, CATEGORY, SENTIMENT or IMPACT_LEVEL"),
    engine: LearningEngine = Depends(get_engine),
):
    return engine.list_rules(type)


@router.get("/rules/top", response_model=List[RuleResponse])
def get_top_rules(
    limit: int = Query(10, ge=1, le=100),
    min_predictions: int = Query(1, ge=1),
    engine: LearningEngine = Depends(get_engine),
):
    return engine.get_top_rules(limit=limit, min_predictions=min_predictions)


@router.get("/rules/{rule_type}/{rule_value}", response_model=RuleResponse)
def get_rule(
    rule_type: str,
    rule_value: str,
    engine: LearningEngine = Depends(get_engine),
):
    rule = engine.get_rule(rule_type, rule_value)
    if rule is None:
        raise ResourceNotFoundException("Rule", f"{rule_type.upper()}:{rule_value}")
    return rule


@router.get("/patterns", response_model=List[PatternResponse])
def get_patterns_by_type(
    type: str = Query(PREDICTION_OUTCOME_PATTERN, description="PREDICTION_OUTCOME, TIME_BASED, SECTOR_CORRELATION, VOLUME_PATTERN or MARKET_CONDITION"),
    engine: LearningEngine = Depends(get_engine),
):
    return engine.get_patterns_by_type(type)
