"""Application configuration from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./reconciliation.db",
        description="Async SQLAlchemy connection string",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/reconciliation.log", description="Log file path")

    # Reading store access
    fetch_concurrency: int = Field(
        default=5, ge=1, description="Meters fetched concurrently by the batch runner"
    )
    page_size: int = Field(default=1000, ge=1, description="Readings per store page")
    fetch_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for one meter fetch attempt"
    )
    max_retries: int = Field(default=3, ge=0, description="Retries after a failed fetch attempt")
    retry_backoff_seconds: float = Field(
        default=2.0, ge=0, description="Base retry delay, doubled on every attempt"
    )

    # Plausibility bounds for a single interval sample
    max_kwh_per_interval: float = Field(default=10000.0, gt=0)
    max_kva_per_interval: float = Field(default=50000.0, gt=0)
    max_other_value: float = Field(default=100000.0, gt=0)

    # Tariff calendar
    high_season_months: list[int] = Field(
        default=[6, 7, 8], description="Months priced as high-demand season"
    )

    # API
    api_title: str = Field(default="Meter Reconciliation API", description="API title")
    api_version: str = Field(default="0.1.0", description="API version")


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()


# Global settings instance
settings = get_settings()
