"""
Custom exceptions for the news impact learning engine.

Provides domain-specific exceptions with clear error messages and
support for structured error handling.
"""

from typing import Optional, Dict, Any


class NewsImpactError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(NewsImpactError):
    """Database operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Referenced record does not exist."""
    pass


class DuplicateRecordError(DatabaseError):
    """Attempted to create a duplicate record."""
    pass


# ============================================================================
# Idempotency Guards
# ============================================================================

class IdempotencyGuardError(DuplicateRecordError):
    """
    The operation was already applied.

    Callers retrying the same logical operation should treat this as a
    successful no-op rather than a failure.
    """
    pass


class AlreadyEvaluatedError(IdempotencyGuardError):
    """Prediction already carries an accuracy."""
    pass


class DuplicateAnalysisError(IdempotencyGuardError):
    """Retrospective analysis already recorded for this movement."""
    pass


class ReportAlreadyExistsError(IdempotencyGuardError):
    """Daily report already compiled for this date."""
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(NewsImpactError):
    """Input validation failed; nothing was persisted."""
    pass


class InvalidTimeWindowError(ValidationError):
    """Symbolic time window could not be parsed."""
    pass


class PredictionNotDueError(ValidationError):
    """Evaluation requested before the prediction's due time."""
    pass


# ============================================================================
# Concurrency Errors
# ============================================================================

class AggregateUpdateConflictError(NewsImpactError):
    """Concurrent update to the same rule or pattern key. Retried internally."""
    pass


class TransientFailureError(NewsImpactError):
    """Operation failed after bounded retries; safe to retry later."""
    pass
