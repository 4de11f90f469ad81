"""Configuration settings for the Venue Booking service."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./venue_booking.db"
    database_pool_size: int = 20
    database_max_overflow: int = 30
    database_busy_timeout_seconds: float = 5.0

    # Redis / Celery Configuration
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # Application Configuration
    debug: bool = False
    environment: str = "development"

    # All business dates and times are interpreted in this zone
    business_timezone: str = "Asia/Bangkok"

    # Unit of work
    unit_of_work_timeout_seconds: float = 10.0
    unit_of_work_max_lock_retries: int = 3
    unit_of_work_retry_base_delay: float = 0.05

    # Rate Limiting Configuration
    enable_rate_limiting: bool = True
    rate_limit: int = 5
    rate_limit_window_seconds: int = 600
    rate_limit_fail_open: bool = True
    rate_limit_purge_after_windows: int = 2
    # Peers whose X-Forwarded-For / X-Real-IP headers are believed
    trusted_proxies: list[str] = []

    # Overlap guard degrades to "allow" when the store cannot be read
    overlap_guard_fail_open: bool = True

    # Response tokens
    token_grace_period_seconds: int = 300
    token_extended_grace_period_seconds: int = 900
    token_max_lifetime_days: int = 30

    # Notifications
    notification_max_retries: int = 5
    notification_retry_base_delay: int = 30
    notification_sink: Optional[str] = None

    # CORS Configuration
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["GET", "POST", "OPTIONS"]
    cors_allow_headers: list[str] = ["*"]
    cors_expose_headers: list[str] = ["X-Request-ID", "X-Process-Time", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"]

    # Logging Configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None
    enable_json_logging: bool = False
    enable_request_logging: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8"
    }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
