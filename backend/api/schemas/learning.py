"""Rule, pattern, retrospective and report response schemas"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from newsimpact.domain.market import PriceMovement


class RuleResponse(BaseModel):
    rule_type: str
    rule_value: str
    total_predictions: int
    successful_predictions: int
    success_rate: float
    average_accuracy: float
    average_change_percent: float
    last_updated: Optional[datetime] = None

    class Config:
        from_attributes = True


class PatternResponse(BaseModel):
    pattern_type: str
    pattern_data: Dict[str, Any]
    confidence: float
    occurrences: int
    accuracy: float
    low_confidence: bool
    last_seen: Optional[datetime] = None

    class Config:
        from_attributes = True


class MovementScanRequest(PriceMovement):
    """A realized price movement submitted for retrospective analysis"""


class RetrospectiveResponse(BaseModel):
    id: int
    stock_symbol: str
    movement_percent: float
    analysis_date: date
    movement_start_time: datetime
    movement_end_time: datetime
    preceding_news_count: int
    existing_predictions_count: int
    missed_opportunity: bool
    missed_reasons: List[str]
    retrospective_accuracy: float
    analysis_data: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class DailyReportResponse(BaseModel):
    report_date: date
    report_data: Dict[str, Any]
    total_articles: int
    total_predictions: int
    average_accuracy: float
    top_gainers: List[Dict[str, Any]]
    top_losers: List[Dict[str, Any]]
    insights: List[str]
    recommendations: List[str]
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobExecutionResponse(BaseModel):
    id: int
    job_name: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    result_summary: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class JobTriggerResponse(BaseModel):
    job_name: str
    status: str
    result: Optional[Dict[str, Any]] = None
