"""
Configuration management using Pydantic Settings.
All parameters are loaded from environment variables with sensible defaults.
"""

from datetime import timedelta
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = Field(default="development")
    app_debug: bool = Field(default=False)
    app_log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Database
    database_url: str = Field(default="sqlite:///./data/reconciliation.db")

    # Ledger collaborator (empty URL = in-memory ledger)
    ledger_api_url: str = Field(default="")
    ledger_api_token: Optional[str] = Field(default=None)
    ledger_timeout_seconds: float = Field(default=30.0)

    # Matching Parameters
    reference_confidence: int = Field(default=100)
    same_day_confidence: int = Field(default=95)
    near_date_base_confidence: int = Field(default=80)
    near_date_step: int = Field(default=5)
    date_window_days: int = Field(default=3)
    amount_tolerance_minor_units: int = Field(default=1)

    # Decision Policy
    auto_match_threshold: int = Field(default=95)

    # Queue Parameters
    queue_batch_size: int = Field(default=50)
    queue_max_retries: int = Field(default=5)
    retry_delay_minutes: int = Field(default=5)

    # Candidate Pool / Sweep Limits
    candidate_pool_limit: int = Field(default=1000)
    sweep_limit: int = Field(default=500)
    records_limit: int = Field(default=500)

    # Manual Review Suggestions
    suggestion_limit: int = Field(default=20)
    suggestion_amount_ratio: float = Field(default=0.10)

    def near_date_confidence(self, days_apart: int) -> int:
        """
        Confidence for an amount match that is off by a few days.
        Returns: near_date_base - step * days (1 -> 75, 2 -> 70, 3 -> 65)
        """
        return self.near_date_base_confidence - self.near_date_step * days_apart

    @property
    def retry_delay(self) -> timedelta:
        return timedelta(minutes=self.retry_delay_minutes)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
