"""
API endpoints for the scheduled learning jobs.

Manual triggers go through the same skip-if-busy runner as the scheduler,
so a trigger during a scheduled run is recorded as SKIPPED.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_engine, get_task_runner
from api.scheduler import JOBS, TaskRunner, run_job
from api.schemas.learning import JobExecutionResponse, JobTriggerResponse
from api.utils.exceptions import ResourceNotFoundException
from newsimpact.db.repositories import JobExecutionHistoryRepository
from newsimpact.services.learning_engine import LearningEngine


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/{job_name}/trigger", response_model=JobTriggerResponse)
async def trigger_job(
    job_name: str,
    engine: LearningEngine = Depends(get_engine),
    runner: TaskRunner = Depends(get_task_runner),
):
    if job_name not in JOBS:
        raise ResourceNotFoundException("Job", job_name)
    return await run_job(job_name, engine, runner)


@router.get("/history", response_model=List[JobExecutionResponse])
def get_job_history(
    job_name: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return JobExecutionHistoryRepository(db).find_recent(job_name=job_name, limit=limit)
