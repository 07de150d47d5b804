"""Main FastAPI application"""
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from newsimpact import __version__
from newsimpact.config import settings
from newsimpact.db.session import init_db
import newsimpact.log_config  # noqa: F401  configures sinks on import
from newsimpact.utils.errors import NewsImpactError
from api.dependencies import get_engine
from api.routers import jobs, learning, predictions, reports, retrospective
from api.scheduler import start_scheduler, stop_scheduler
from api.schemas.errors import ErrorCode
from api.utils.exceptions import NewsImpactAPIException, status_for_domain_error


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting News Impact API...")

    init_db()
    logger.info("Database tables created/verified")

    if settings.scheduler_enabled:
        start_scheduler(get_engine())
        logger.info("Background learning jobs started")
    else:
        logger.info("Scheduler disabled, background learning jobs not started")

    yield

    logger.info("Shutting down News Impact API...")
    stop_scheduler()


app = FastAPI(
    title="News Impact Learning Engine",
    description="Prediction reliability scoring and retrospective learning over news and price feeds",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
    return response


@app.exception_handler(NewsImpactError)
async def news_impact_error_handler(request: Request, exc: NewsImpactError):
    status_code = status_for_domain_error(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.__class__.__name__}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(NewsImpactAPIException)
async def news_impact_api_exception_handler(request: Request, exc: NewsImpactAPIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": exc.message, "details": exc.details},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": ErrorCode.VALIDATION_ERROR,
            "message": "Request validation failed",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": ErrorCode.INTERNAL_ERROR, "message": "Internal server error", "details": {}},
    )


app.include_router(predictions.router)
app.include_router(learning.router)
app.include_router(retrospective.router)
app.include_router(reports.router)
app.include_router(jobs.router)


@app.get("/healthz", tags=["health"])
def healthz():
    return {"status": "ok", "version": __version__}
