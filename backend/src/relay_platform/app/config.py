"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./relay_platform.db"

    # AI (message rendering, relevance checks)
    gemini_api_key: str = ""
    render_model_name: str = "gemini-3-flash-preview"
    relevance_model_name: str = "gemini-3-flash-preview"
    relevance_context_limit: int = 5  # inbound messages shown to the relevance check

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # Queue processor
    poll_interval_seconds: int = 30
    queue_batch_size: int = 50
    processor_autostart: bool = True

    # Budgets
    default_daily_limit: int = 10
    default_hourly_limit: int = 2

    # Quiet hours (local hour of day, 24h clock)
    default_quiet_hours_start: int = 22
    default_quiet_hours_end: int = 8
    default_timezone: str = "America/New_York"
    active_user_window_minutes: int = 10

    # Availability over strict enforcement when the budget store is unreachable
    rate_limit_fail_open: bool = True

    # Sequences: "deliver_partial" or "withhold"
    incomplete_sequence_policy: str = "deliver_partial"
    incomplete_sequence_timeout_minutes: int = 30

    # Dispatch retries
    dispatch_retry_base_seconds: int = 60
    dispatch_retry_max_seconds: int = 3600
    dispatch_failure_alert_threshold: int = 3

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
