"""
Configuration management for the referral workflow engine.
Supports .env files and environment variables.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REFERRAL_",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///referral_workflow.db"
    database_echo: bool = False

    # Logging
    log_level: str = "INFO"

    # Lifecycle timing
    expiration_days: int = 30  # sent -> expired once unscheduled this long
    follow_up_days: int = 14  # follow-up task offset after a referral is sent

    # Concurrency
    transition_max_attempts: int = 2  # re-fetch and retry on a stale write
    action_workers: int = 4  # 0 runs automated actions inline
    action_max_attempts: int = 2

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 10.0

    # Letters
    default_letter_template: str = "standard_referral"

    # Application settings
    app_name: str = "Referral Workflow"
    debug: bool = False


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings
