"""
Logging setup for the engine, the API and the job scripts.

loguru is the logger every module writes to. structlog renders the
key/value events of the job runner, and stdlib logging (SQLAlchemy,
APScheduler, uvicorn) is routed into loguru. A job run binds its name and
run id once; both loguru records and structlog events carry them.
"""

import logging
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List

import structlog
from loguru import logger
from structlog.typing import EventDict, Processor, WrappedLogger

from newsimpact.config import Settings, settings

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[job]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

NO_JOB = "-"

# Third-party loggers that are only useful when debugging them
QUIET_LOGGERS = ("sqlalchemy.engine", "apscheduler", "httpx", "httpcore")


class RedactSecrets:
    """Replace values of credential-like keys (connection URLs, tokens) in structured events."""

    SECRET_KEYS = ("password", "token", "secret", "api_key", "database_url")

    def __call__(self, logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
        for key in event_dict:
            if any(secret in key.lower() for secret in self.SECRET_KEYS):
                event_dict[key] = "[REDACTED]"
        return event_dict


def stamp_event(logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    event_dict["level"] = name.upper()
    return event_dict


class InterceptHandler(logging.Handler):
    """Hand stdlib log records to loguru at the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _add_loguru_sinks(config: Settings) -> None:
    serialize = config.log_format == "json"
    common: Dict[str, Any] = {
        "format": "{message}" if serialize else TEXT_FORMAT,
        "level": config.log_level,
        "serialize": serialize,
        "backtrace": True,
        "diagnose": config.is_development,
    }

    logger.remove()
    logger.configure(extra={"job": NO_JOB, "run_id": None})
    logger.add(sys.stderr, **common)

    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(config.log_file, rotation="100 MB", retention="10 days", compression="zip", **common)


def _structlog_processors(json_output: bool) -> List[Processor]:
    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        stamp_event,
        RedactSecrets(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    processors.append(structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer())
    return processors


def configure_logging(config: Settings = settings) -> None:
    """Install loguru sinks, structlog processors and the stdlib intercept."""
    _add_loguru_sinks(config)

    structlog.configure(
        processors=_structlog_processors(config.log_format == "json"),
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(config.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(
        f"Logging configured (level={config.log_level}, format={config.log_format}, "
        f"environment={config.app_env})"
    )


@contextmanager
def job_context(job_name: str) -> Iterator[str]:
    """
    Tag every log line emitted inside the block with the job name and a run id.

    Yields the run id.
    """
    run_id = uuid.uuid4().hex[:12]
    with logger.contextualize(job=job_name, run_id=run_id):
        with structlog.contextvars.bound_contextvars(job=job_name, run_id=run_id):
            yield run_id


def get_logger(name: str) -> Any:
    """structlog logger for key/value events."""
    return structlog.get_logger(name)


configure_logging()
