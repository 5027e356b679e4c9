"""
Configuration management using Pydantic Settings.
Loads environment variables from .env file.
"""
from datetime import date, time
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Stageflow"
    app_version: str = "0.1.0"
    debug: bool = False

    # Supabase Configuration
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None  # For the background worker

    # CORS Settings (for Frontend)
    cors_origins: str = "http://localhost:5173"

    # Working calendar defaults (used when a project type has no calendar of its own)
    work_days: str = "1,2,3,4,5"  # ISO weekdays, Monday=1
    work_day_start: time = time(9, 0)
    work_day_end: time = time(17, 30)
    work_timezone: str = "UTC"
    work_holidays: str = ""  # Comma-separated ISO dates

    # Email Configuration (SMTP)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: str = "noreply@stageflow.app"
    smtp_from_name: str = "Stageflow"
    smtp_use_tls: bool = True

    # SendGrid Configuration (alternative to SMTP)
    sendgrid_api_key: Optional[str] = None
    sendgrid_from_email: str = "noreply@stageflow.app"

    # SMS / Push gateways
    sms_gateway_url: Optional[str] = None
    sms_gateway_token: Optional[str] = None
    sms_sender_id: str = "Stageflow"
    push_gateway_url: Optional[str] = None
    push_gateway_token: Optional[str] = None

    # Delivery Settings
    delivery_timeout_seconds: float = 30.0
    delivery_batch_size: int = 100
    # A claim older than this is treated as abandoned by a crashed worker
    delivery_claim_ttl_seconds: int = 600
    skip_past_date_notifications: bool = True

    # Scheduler Settings
    enable_scheduler: bool = True
    scheduler_timezone: str = "UTC"

    # Only ONE worker should run the scheduler in multi-worker deployments
    run_scheduler: bool = False
    generation_interval_minutes: int = 60
    process_due_interval_minutes: int = 1

    # Operations fallback for job failure alerts
    ops_escalation_email: Optional[str] = None
    ops_escalation_name: str = "Operations Team"

    # Job Monitoring
    job_failure_alert_threshold: int = 2

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def work_day_list(self) -> list[int]:
        """Parse comma-separated ISO weekdays."""
        return [int(day) for day in self.work_days.split(",") if day.strip()]

    @property
    def work_holiday_list(self) -> list[date]:
        """Parse comma-separated holiday dates."""
        return [
            date.fromisoformat(day.strip())
            for day in self.work_holidays.split(",")
            if day.strip()
        ]

    @property
    def email_enabled(self) -> bool:
        """Check if email is configured."""
        return bool(self.smtp_host or self.sendgrid_api_key)

    @property
    def sms_enabled(self) -> bool:
        """Check if an SMS gateway is configured."""
        return bool(self.sms_gateway_url)

    @property
    def push_enabled(self) -> bool:
        """Check if a push gateway is configured."""
        return bool(self.push_gateway_url)


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.
    Call this function to get application settings.
    """
    return Settings()


# Global settings instance
settings = get_settings()
