"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Invalid values (for example a
negative scoring weight or a hold duration outside 1-60 minutes) fail when
the settings are loaded, so a misconfigured worker never starts.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MIN_HOLD_MINUTES = 1
MAX_HOLD_MINUTES = 60


class ScoringWeights(BaseModel):
    """Integer weights used by the priority scoring engine."""

    model_config = ConfigDict(frozen=True)

    base_score: int = Field(20, ge=0)
    vip_bonus: int = Field(15, ge=0)
    service_match_bonus: int = Field(15, ge=0)
    staff_preference_bonus: int = Field(10, ge=0)
    time_window_bonus: int = Field(10, ge=0)
    recency_bonus_per_week: int = Field(1, ge=0)
    max_recency_bonus: int = Field(20, ge=0)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./slotkeeper.db"
    db_pool_size: int = Field(10, ge=1)
    db_max_overflow: int = Field(20, ge=0)
    db_echo: bool = False

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    api_v1_prefix: str = "/api/v1"
    correlation_ids_enabled: bool = True

    # ==========================================================================
    # Slot holds and waitlist rules
    # ==========================================================================
    hold_duration_minutes: int = 10
    max_active_entries_per_phone: int = 3
    scoring_weights: ScoringWeights = ScoringWeights()

    # ==========================================================================
    # Background jobs
    # ==========================================================================
    run_background_workers: bool = False  # Start the worker pool inside the API process
    worker_count: int = Field(4, ge=1)
    expired_hold_sweep_interval_seconds: int = Field(60, ge=1)
    score_recalculation_interval_seconds: int = Field(3600, ge=60)
    cleanup_interval_seconds: int = Field(86400, ge=60)
    retention_days: int = Field(30, ge=1)
    notification_max_retries: int = Field(3, ge=1)
    notification_retry_base_delay_seconds: float = Field(1.0, gt=0)

    # ==========================================================================
    # Notification delivery
    # ==========================================================================
    notification_provider: Literal["log", "live"] = "log"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    twilio_whatsapp_from: Optional[str] = None
    sendgrid_api_key: Optional[str] = None
    email_from: str = "waitlist@example.com"
    public_base_url: str = "http://localhost:8000"

    @field_validator("hold_duration_minutes")
    @classmethod
    def validate_hold_duration(cls, v: int) -> int:
        if not MIN_HOLD_MINUTES <= v <= MAX_HOLD_MINUTES:
            raise ValueError(
                f"hold_duration_minutes must be between {MIN_HOLD_MINUTES} and "
                f"{MAX_HOLD_MINUTES}, got {v}"
            )
        return v

    @field_validator("max_active_entries_per_phone")
    @classmethod
    def validate_max_active_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_active_entries_per_phone must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_live_notifications(self) -> "Settings":
        """Live delivery needs at least one configured provider."""
        if self.notification_provider == "live":
            has_twilio = bool(self.twilio_account_sid and self.twilio_auth_token)
            if not has_twilio and not self.sendgrid_api_key:
                raise ValueError(
                    "notification_provider=live requires Twilio credentials "
                    "or SENDGRID_API_KEY"
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
