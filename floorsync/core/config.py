"""Application settings with Pydantic validation and environment loading."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Cron weekday numbers (0 and 7 are Sunday) to APScheduler day names
_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class ScheduleSpec:
    """Structured form of a daily or weekly trigger time.

    ``weekday`` follows cron numbering (0 = Sunday) and is ``None`` for jobs
    that fire every day.
    """

    hour: int
    minute: int
    weekday: Optional[int] = None

    @property
    def day_of_week(self) -> str | None:
        """Weekday as an APScheduler ``day_of_week`` value."""
        if self.weekday is None:
            return None
        return _CRON_WEEKDAYS[self.weekday]

    def to_cron(self) -> str:
        weekday = "*" if self.weekday is None else str(self.weekday)
        return f"{self.minute} {self.hour} * * {weekday}"


def parse_schedule(expr: str) -> ScheduleSpec:
    """
    Parse a five-field cron expression into a ScheduleSpec.

    Only fixed-time daily (``M H * * *``) and weekly (``M H * * D``)
    expressions are accepted; anything else raises ValueError.
    """
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: {expr!r}")

    minute, hour, day_of_month, month, weekday = fields
    if day_of_month != "*" or month != "*":
        raise ValueError(f"Only daily or weekly schedules are supported: {expr!r}")

    try:
        minute_val = int(minute)
        hour_val = int(hour)
        weekday_val = None if weekday == "*" else int(weekday)
    except ValueError as e:
        raise ValueError(f"Non-numeric cron field in {expr!r}") from e

    if not 0 <= minute_val <= 59:
        raise ValueError(f"Minute out of range in {expr!r}")
    if not 0 <= hour_val <= 23:
        raise ValueError(f"Hour out of range in {expr!r}")
    if weekday_val is not None and not 0 <= weekday_val <= 7:
        raise ValueError(f"Weekday out of range in {expr!r}")

    return ScheduleSpec(hour=hour_val, minute=minute_val, weekday=weekday_val)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "floorsync"
    app_version: str = "1.0.0"
    debug: bool = Field(default=False, description="Include source locations in logs")
    environment: str = Field(
        default="production",
        description="Environment: development, staging, production, test",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/floorsync.db",
        description="SQLAlchemy URL (sqlite, sqlite+aiosqlite, postgresql or postgresql+asyncpg)",
    )
    db_pool_min_size: int = Field(
        default=5, ge=1, le=20, description="Minimum database pool connections"
    )
    db_pool_max_size: int = Field(
        default=20, ge=5, le=100, description="Maximum database pool connections"
    )
    db_echo: bool = Field(default=False, description="Log emitted SQL")

    # Upstream price-floor API (RapidAPI)
    api_base_url: str = Field(
        default="https://nftpf-api-v0.p.rapidapi.com",
        description="Base URL of the price-floor API",
    )
    rapidapi_key: str = Field(default="", description="RapidAPI key")
    rapidapi_host: str = Field(
        default="nftpf-api-v0.p.rapidapi.com", description="RapidAPI host header"
    )
    external_api_timeout: int = Field(
        default=30, ge=5, le=120, description="External API timeout in seconds"
    )

    # Request queue
    rate_limit_min_spacing_ms: int = Field(
        default=500, ge=0, le=60_000, description="Minimum delay between dispatched API calls"
    )
    rate_limit_max_queue_size: int = Field(
        default=50, ge=0, description="Maximum pending requests (0 = unbounded)"
    )
    rate_limit_max_requests_per_window: int = Field(
        default=100, ge=0, description="Dispatch budget per window (0 = unlimited)"
    )
    rate_limit_window_seconds: float = Field(
        default=60.0, gt=0, description="Sliding window for the dispatch budget"
    )

    # Quarterly selection
    selection_count: int = Field(default=250, ge=1, le=5000)
    selection_criteria: str = Field(default="market_cap_usd")

    # Daily sync
    sync_batch_size: int = Field(default=10, ge=1, le=50)
    sync_batch_delay_seconds: float = Field(default=2.0, ge=0)
    sync_max_retries: int = Field(default=3, ge=1, le=10)
    sync_retry_base_delay_seconds: float = Field(default=2.0, ge=0)
    sync_days_to_fetch: int = Field(default=1, ge=1, le=30)

    # Full-history bootstrap
    backfill_days: int = Field(default=365, ge=1, le=3650)
    backfill_batch_size: int = Field(default=5, ge=1, le=50)
    backfill_batch_delay_seconds: float = Field(default=5.0, ge=0)
    backfill_max_retries: int = Field(default=5, ge=1, le=10)

    # Retention
    retention_days: int = Field(default=365, ge=1)
    sync_log_retention_days: int = Field(default=30, ge=1)

    # Scheduler
    scheduler_enabled: bool = Field(
        default=True, description="Enable background job scheduler"
    )
    scheduler_timezone: str = Field(default="UTC", description="Scheduler timezone")
    daily_sync_cron: str = Field(default="0 2 * * *", description="Daily sync at 02:00")
    weekly_cleanup_cron: str = Field(
        default="0 3 * * 0", description="Weekly cleanup Sunday 03:00"
    )
    overlap_window_minutes: int = Field(default=60, ge=1)
    bootstrap_min_price_records: int = Field(default=100, ge=0)
    bootstrap_delay_seconds: float = Field(default=5.0, ge=0)

    # Notifications
    notification_webhook_url: Optional[str] = Field(
        default=None, description="POST job notifications to this URL"
    )

    # Logging
    log_level: str = Field(
        default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR"
    )
    log_format: str = Field(default="text", description="Log format: json or text")

    @field_validator("daily_sync_cron", "weekly_cleanup_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        parse_schedule(v)
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {valid}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        lower = v.lower()
        if lower not in {"json", "text"}:
            raise ValueError("log_format must be 'json' or 'text'")
        return lower

    @property
    def daily_sync_schedule(self) -> ScheduleSpec:
        return parse_schedule(self.daily_sync_cron)

    @property
    def weekly_cleanup_schedule(self) -> ScheduleSpec:
        return parse_schedule(self.weekly_cleanup_cron)


@lru_cache
def get_settings() -> Settings:
    """Cached settings factory."""
    return Settings()
