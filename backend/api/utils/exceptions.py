"""Custom exception classes and domain error mapping for the News Impact API"""
from fastapi import HTTPException, status

from newsimpact.utils.errors import (
    IdempotencyGuardError,
    NewsImpactError,
    RecordNotFoundError,
    TransientFailureError,
    ValidationError,
)
from api.schemas.errors import ErrorCode


class NewsImpactAPIException(HTTPException):
    """Base exception with error_code support"""

    def __init__(self, error_code: str, message: str, status_code: int, details=None):
        super().__init__(status_code=status_code, detail=message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}


class ResourceNotFoundException(NewsImpactAPIException):
    """Exception for when a resource is not found"""

    def __init__(self, resource: str, identifier: str = None):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            error_code=ErrorCode.NOT_FOUND,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "identifier": identifier},
        )


# Most specific class first
DOMAIN_ERROR_STATUS = [
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (IdempotencyGuardError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TransientFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for_domain_error(exc: NewsImpactError) -> int:
    """HTTP status for an engine error; unmapped errors are server errors"""
    for error_cls, status_code in DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR
