"""
API endpoints for daily reports.
"""

from datetime import date

from fastapi import APIRouter, Depends, status

from api.dependencies import get_engine
from api.schemas.learning import DailyReportResponse
from api.utils.exceptions import ResourceNotFoundException
from newsimpact.services.learning_engine import LearningEngine


router = APIRouter(prefix="/reports", tags=["reports"])


@router.post("/daily/{report_date}", response_model=DailyReportResponse, status_code=status.HTTP_201_CREATED)
def compile_daily_report(
    report_date: date,
    engine: LearningEngine = Depends(get_engine),
):
    """Compile the report for a date. Reports are write-once; a second request returns 409."""
    return engine.compile_daily_report(report_date)


@router.get("/daily/{report_date}", response_model=DailyReportResponse)
def get_report_by_date(
    report_date: date,
    engine: LearningEngine = Depends(get_engine),
):
    report = engine.get_report_by_date(report_date)
    if report is None:
        raise ResourceNotFoundException("Daily report", report_date.isoformat())
    return report
