"""
Runtime configuration for the alert dispatcher.

Every tunable (batch caps, digest timing, backoff schedule, pacing, trigger
credentials) lives here and is read from ``ALERTS_*`` environment variables
or a ``.env`` file.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.templates import RenderOptions


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ALERTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Batch sizing
    batch_limit: int = Field(default=50, ge=1)
    max_batch_limit: int = Field(default=200, ge=1)
    max_subscribers: int = Field(default=5000, ge=1)
    max_digest_items: int = Field(default=100, ge=1)

    # Rendering
    max_calendar_rows: int = 100
    max_calendar_rows_digest: int = 25
    dashboard_base_url: str = "https://www.caucusreport.com"

    # Digest timing
    reference_timezone: str = "America/New_York"
    digest_window_minutes: int = Field(default=5, ge=0)
    digest_min_gap_minutes: int = Field(default=30, ge=0)

    # Retry
    stale_claim_minutes: int = Field(default=15, ge=1)
    backoff_schedule_minutes: list[int] = Field(default_factory=lambda: [2, 5, 10, 20, 40, 60])
    rate_limited_delay_minutes: int = 15
    quota_delay_minutes: int = 720
    max_attempts: Optional[int] = Field(default=None, ge=1)

    # Pacing between sends
    send_interval_seconds: float = 0.55
    rate_limited_interval_seconds: float = 2.0

    # Trigger credentials
    cron_secret: Optional[str] = None
    operator_session_tokens: list[str] = Field(default_factory=list)

    # Storage
    database_url: Optional[str] = None
    data_dir: Path = Path("./data")

    log_level: str = "INFO"

    @field_validator("reference_timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"unknown timezone: {value}") from e
        return value

    @field_validator("backoff_schedule_minutes")
    @classmethod
    def _valid_schedule(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("backoff schedule must have at least one step")
        if any(later < earlier for earlier, later in zip(value, value[1:])):
            raise ValueError(f"backoff schedule must not decrease: {value}")
        return value

    def render_options(self) -> RenderOptions:
        return RenderOptions(
            timezone=self.reference_timezone,
            dashboard_base_url=self.dashboard_base_url,
            max_calendar_rows=self.max_calendar_rows,
            max_calendar_rows_digest=self.max_calendar_rows_digest,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
