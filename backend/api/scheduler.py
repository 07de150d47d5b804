"""Background scheduler for the learning jobs: evaluation, retrospective scan, daily report"""
import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from newsimpact.config import settings
from newsimpact.db.repositories import JobExecutionHistoryRepository
from newsimpact.db.session import SessionLocal, session_scope
from newsimpact.log_config import get_logger, job_context
from newsimpact.services.learning_engine import LearningEngine
from newsimpact.utils.datetime import Clock, SystemClock
from newsimpact.utils.errors import ReportAlreadyExistsError

logger = get_logger(__name__)
scheduler = AsyncIOScheduler(timezone="UTC")

# Learning jobs are synchronous and database bound; they run off the event loop
JOB_POOL = ThreadPoolExecutor(max_workers=3, thread_name_prefix="learning-job-")

# Set on shutdown so an in-flight evaluation pass stops between predictions
shutdown_event = threading.Event()

EVALUATION_JOB = "evaluation_pass"
RETROSPECTIVE_JOB = "retrospective_scan"
DAILY_REPORT_JOB = "daily_report"


class JobStatus:
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TaskRunner:
    """
    Runs named jobs with a skip-if-busy policy and records each run.

    A run requested while the previous run of the same job is still in
    flight is refused immediately and recorded as SKIPPED; it is not queued.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Optional[Clock] = None,
    ):
        self.session_factory = session_factory
        self.executor = executor or JOB_POOL
        self.clock = clock or SystemClock()
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    def is_running(self, job_name: str) -> bool:
        with self._lock:
            return job_name in self._in_flight

    def _try_acquire(self, job_name: str) -> bool:
        with self._lock:
            if job_name in self._in_flight:
                return False
            self._in_flight.add(job_name)
            return True

    def _release(self, job_name: str) -> None:
        with self._lock:
            self._in_flight.discard(job_name)

    def run(self, job_name: str, fn: Callable[[], Optional[Dict[str, Any]]]) -> Dict[str, Any]:
        """Run fn synchronously under the job's in-flight guard."""
        started = self.clock.now()

        if not self._try_acquire(job_name):
            logger.warning("job_skipped", job=job_name, reason="previous run still in flight")
            self._record(job_name, JobStatus.SKIPPED, started, started, 0)
            return {"job_name": job_name, "status": JobStatus.SKIPPED, "result": None}

        t0 = time.monotonic()
        with job_context(job_name):
            try:
                logger.info("job_started")
                result = fn() or {}
            except Exception as e:
                duration_ms = int((time.monotonic() - t0) * 1000)
                logger.error("job_failed", error=str(e), duration_ms=duration_ms, exc_info=True)
                self._record(job_name, JobStatus.FAILED, started, self.clock.now(), duration_ms, error_message=str(e))
                return {"job_name": job_name, "status": JobStatus.FAILED, "result": {"error": str(e)}}
            finally:
                self._release(job_name)

            duration_ms = int((time.monotonic() - t0) * 1000)
            logger.info("job_finished", duration_ms=duration_ms)
            self._record(job_name, JobStatus.SUCCESS, started, self.clock.now(), duration_ms, result_summary=result)
            return {"job_name": job_name, "status": JobStatus.SUCCESS, "result": result}

    async def run_async(self, job_name: str, fn: Callable[[], Optional[Dict[str, Any]]]) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.run, job_name, fn)

    def _record(
        self,
        job_name: str,
        status: str,
        start_time,
        end_time,
        duration_ms: int,
        error_message: Optional[str] = None,
        result_summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            with session_scope(self.session_factory) as db:
                JobExecutionHistoryRepository(db).create(
                    job_name=job_name,
                    status=status,
                    start_time=start_time,
                    end_time=end_time,
                    duration_ms=duration_ms,
                    error_message=error_message,
                    result_summary=result_summary,
                )
        except Exception as e:
            # Job outcome stands even when its history row cannot be written
            logger.error("job_history_write_failed", job=job_name, status=status, error=str(e))


def run_evaluation(engine: LearningEngine) -> Dict[str, Any]:
    return engine.run_evaluation_pass(cancel_event=shutdown_event)


def run_retrospective(engine: LearningEngine) -> Dict[str, Any]:
    return engine.run_retrospective_pass()


def run_daily_report(engine: LearningEngine) -> Dict[str, Any]:
    """Time-based and market patterns first, then the report for the previous calendar day"""
    now = engine.clock.now()
    report_date = (now - timedelta(days=1)).date()

    time_patterns = engine.analyze_time_based_patterns(now)
    market_patterns = engine.analyze_market_patterns(now)
    try:
        report = engine.compile_daily_report(report_date)
    except ReportAlreadyExistsError:
        logger.info("daily_report_exists", report_date=report_date.isoformat())
        return {
            "report_date": report_date.isoformat(),
            "compiled": False,
            "time_patterns": len(time_patterns),
            "market_patterns": market_patterns,
        }

    return {
        "report_date": report_date.isoformat(),
        "compiled": True,
        "total_predictions": report.total_predictions,
        "average_accuracy": report.average_accuracy,
        "time_patterns": len(time_patterns),
        "market_patterns": market_patterns,
    }


JOBS: Dict[str, Callable[[LearningEngine], Dict[str, Any]]] = {
    EVALUATION_JOB: run_evaluation,
    RETROSPECTIVE_JOB: run_retrospective,
    DAILY_REPORT_JOB: run_daily_report,
}

task_runner = TaskRunner()


async def run_job(job_name: str, engine: LearningEngine, runner: Optional[TaskRunner] = None) -> Dict[str, Any]:
    runner = runner or task_runner
    job = JOBS[job_name]
    return await runner.run_async(job_name, lambda: job(engine))


# One slot for the run in flight and one for an overlapping fire, which
# TaskRunner refuses and records as SKIPPED
SCHEDULED_MAX_INSTANCES = 2


def register_jobs(target: AsyncIOScheduler, engine: LearningEngine) -> None:
    """Add the learning jobs to a scheduler; skip-if-busy is left to TaskRunner."""
    job_defaults = {"max_instances": SCHEDULED_MAX_INSTANCES, "coalesce": True, "replace_existing": True}

    target.add_job(
        run_job,
        trigger=IntervalTrigger(minutes=settings.evaluation_interval_minutes),
        args=[EVALUATION_JOB, engine],
        id=EVALUATION_JOB,
        name="Prediction Evaluation Pass",
        **job_defaults,
    )
    target.add_job(
        run_job,
        trigger=IntervalTrigger(minutes=settings.retrospective_interval_minutes),
        args=[RETROSPECTIVE_JOB, engine],
        id=RETROSPECTIVE_JOB,
        name="Retrospective Movement Scan",
        **job_defaults,
    )
    target.add_job(
        run_job,
        trigger=CronTrigger(hour=settings.daily_report_hour, minute=settings.daily_report_minute),
        args=[DAILY_REPORT_JOB, engine],
        id=DAILY_REPORT_JOB,
        name="Daily Report",
        **job_defaults,
    )


def start_scheduler(engine: LearningEngine) -> None:
    """Register the learning jobs and start the scheduler."""
    shutdown_event.clear()
    register_jobs(scheduler, engine)

    scheduler.start()
    logger.info(
        "scheduler_started",
        evaluation_interval_minutes=settings.evaluation_interval_minutes,
        retrospective_interval_minutes=settings.retrospective_interval_minutes,
        daily_report_at=f"{settings.daily_report_hour:02d}:{settings.daily_report_minute:02d} UTC",
    )


def stop_scheduler() -> None:
    """Stop the scheduler and signal in-flight passes to stop between units"""
    shutdown_event.set()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
