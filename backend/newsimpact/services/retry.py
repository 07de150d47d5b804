"""
Conflict detection and bounded retry for rule and pattern updates.
"""

from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from loguru import logger
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from newsimpact.utils.errors import AggregateUpdateConflictError, TransientFailureError

T = TypeVar("T")


@contextmanager
def conflict_guard(aggregate_key: str) -> Iterator[None]:
    """
    Translate write races on an aggregate row into AggregateUpdateConflictError.

    Covers a lost insert race (unique constraint), a stale version column,
    and SQLite's writer lock.
    """
    try:
        yield
    except (IntegrityError, StaleDataError) as e:
        raise AggregateUpdateConflictError(
            f"Concurrent update on {aggregate_key}",
            details={"aggregate_key": aggregate_key, "cause": type(e).__name__},
        ) from e
    except OperationalError as e:
        if "locked" not in str(e).lower():
            raise
        raise AggregateUpdateConflictError(
            f"Store busy while updating {aggregate_key}",
            details={"aggregate_key": aggregate_key, "cause": "database is locked"},
        ) from e


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Aggregate update conflict (attempt {retry_state.attempt_number}), retrying: {exc}"
    )


def run_with_conflict_retry(
    fn: Callable[..., T],
    *args: Any,
    max_attempts: int = 5,
    wait_seconds: float = 0.05,
    aggregate_key: str = "",
    **kwargs: Any,
) -> T:
    """
    Call fn, retrying AggregateUpdateConflictError with exponential backoff.

    Raises:
        TransientFailureError: conflicts persisted for max_attempts attempts
    """
    retryer = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=wait_seconds, min=0, max=max(wait_seconds * 20, 1)),
        retry=retry_if_exception_type(AggregateUpdateConflictError),
        before_sleep=_log_retry,
        reraise=True,
    )

    try:
        return retryer(fn, *args, **kwargs)
    except AggregateUpdateConflictError as e:
        logger.error(f"Giving up on {aggregate_key} after {max_attempts} attempts: {e}")
        raise TransientFailureError(
            f"Update of {aggregate_key} did not complete after {max_attempts} attempts",
            details={"aggregate_key": aggregate_key, "attempts": max_attempts},
        ) from e
