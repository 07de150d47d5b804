"""
Value objects exchanged with the article and price collaborators.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from newsimpact.utils.datetime import to_naive_utc


@dataclass(frozen=True)
class ArticleSummary:
    """Minimal view of a news article used by retrospective analysis and reports."""

    id: int
    title: str
    published_at: datetime
    source: Optional[str] = None
    category: Optional[str] = None
    sentiment_score: Optional[float] = None
    impact_level: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class PricePoint:
    recorded_at: datetime
    price: float
    volume: Optional[float] = None


@dataclass(frozen=True)
class ArticleWindowStats:
    """Article counts over a window; sentiment buckets count only scored articles."""

    total_articles: int = 0
    processed_articles: int = 0
    categories: Dict[str, int] = field(default_factory=dict)
    sentiment_distribution: Dict[str, int] = field(default_factory=dict)


class PriceMovement(BaseModel):
    """A realized price move over a window, as detected by price monitoring."""

    stock_symbol: str = Field(..., min_length=1, max_length=16)
    movement_percent: float = Field(..., allow_inf_nan=False)
    start_time: datetime
    end_time: datetime
    analysis_date: Optional[date] = Field(None, description="Defaults to the calendar date of end_time")

    @field_validator("stock_symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "PriceMovement":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not precede start_time")
        return self

    @property
    def resolved_analysis_date(self) -> date:
        return self.analysis_date or self.end_time.date()
