"""
Configuration management for the news impact learning engine using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from typing import Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # Database
    database_url: str = Field(default="sqlite:///./newsimpact.db", description="SQLAlchemy connection URL")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables the file sink)")

    # Prediction evaluation
    success_accuracy_threshold: float = Field(default=60.0, ge=0, le=100, description="Accuracy at or above which a prediction counts as successful")
    accuracy_epsilon: float = Field(default=0.01, gt=0, description="Floor for |actual change| when scoring magnitude error")
    flat_move_band_percent: float = Field(default=2.0, ge=0, description="Moves within +/- band are FLAT when deriving actual impact")
    evaluation_max_workers: int = Field(default=4, ge=1, description="Symbols evaluated concurrently in one pass")

    # Aggregate updates
    aggregate_update_max_attempts: int = Field(default=5, ge=1, description="Attempts for a conflicting rule/pattern update")
    aggregate_retry_wait_seconds: float = Field(default=0.05, ge=0, description="Base wait between conflicting update attempts")

    # Retrospective analysis
    materiality_threshold_percent: float = Field(default=5.0, gt=0, description="Minimum |move| that triggers retrospective analysis")
    retrospective_lookback_hours: int = Field(default=48, ge=1, description="Window before a movement searched for news and predictions")

    # Patterns
    pattern_min_sample_count: int = Field(default=5, ge=1, description="Occurrences below which a pattern is flagged low-confidence")
    time_pattern_lookback_days: int = Field(default=30, ge=1, description="History used for time-based pattern analysis")
    apply_time_patterns: bool = Field(default=True, description="Adjust new predictions by the matching hour-of-day / weekday patterns")
    sector_map: Dict[str, str] = Field(default_factory=dict, description="Symbol to sector for sector correlation analysis (JSON object)")

    # Daily report
    report_top_movers: int = Field(default=5, ge=1, description="Entries in top gainers / top losers")
    report_reliable_success_rate: float = Field(default=0.7, ge=0, le=1, description="Rule success rate that yields a reliability insight")
    report_reliable_pattern_accuracy: float = Field(default=75.0, ge=0, le=100, description="Pattern accuracy that yields a reliability insight")
    report_min_sample_size: int = Field(default=10, ge=1, description="Minimum predictions before a rule is judged")
    report_review_accuracy_threshold: float = Field(default=50.0, ge=0, le=100, description="Rule average accuracy below which review is recommended")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Enable background scheduler")
    evaluation_interval_minutes: int = Field(default=5, ge=1, description="Evaluation pass interval")
    retrospective_interval_minutes: int = Field(default=15, ge=1, description="Retrospective scan interval")
    daily_report_hour: int = Field(default=0, ge=0, le=23, description="UTC hour of the daily report job")
    daily_report_minute: int = Field(default=10, ge=0, le=59, description="Minute of the daily report job")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and text renderers exist."""
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @field_validator("sector_map")
    @classmethod
    def normalize_sector_map(cls, v: Dict[str, str]) -> Dict[str, str]:
        return {symbol.strip().upper(): sector.strip().upper() for symbol, sector in v.items()}

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"


settings = Settings()
