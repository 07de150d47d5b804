"""Error body returned by every failing endpoint"""
from typing import Any, Dict

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Engine errors carry their exception class name in `error`; transport errors an ErrorCode"""
    error: str = Field(..., examples=["AlreadyEvaluatedError"])
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorCode:
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
