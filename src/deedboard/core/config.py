"""Application configuration loaded from environment variables."""

from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings

from deedboard.core.constants import WEEKDAY_NAMES


class Settings(BaseSettings):
    """Deedboard settings.

    Loaded once at process start; instances are frozen so the reference
    timezone and week start cannot drift under a running engine.
    """

    # App
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # Oracle Database
    oracle_dsn: str = "localhost:1521/FREEPDB1"
    oracle_user: str = "deedboard"
    oracle_password: str = "Deedboard_Dev_2026!"
    oracle_pool_min: int = 2
    oracle_pool_max: int = 10
    oracle_pool_increment: int = 1

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # CORS
    cors_origins: str = "*"

    # Backends
    store_backend: str = "oracle"  # "oracle" or "memory"
    cache_backend: str = "none"  # "none", "memory" or "redis"
    cache_ttl_seconds: int = 900
    pending_backend: str = "memory"  # "memory" or "redis"

    # Aggregation
    reference_timezone: str = "Asia/Dhaka"
    first_day_of_week: str = "saturday"
    tick_interval_seconds: int = 300
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.2
    recompute_max_attempts: int = 3
    max_future_skew_seconds: int = 300

    # Deed points
    custom_deed_points: int = 10

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }

    @field_validator("reference_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown IANA timezone: {value}") from exc
        return value

    @field_validator("first_day_of_week")
    @classmethod
    def _check_first_day(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in WEEKDAY_NAMES:
            raise ValueError(f"Invalid first_day_of_week: {value}")
        return normalized

    @field_validator("store_backend")
    @classmethod
    def _check_store_backend(cls, value: str) -> str:
        if value not in ("oracle", "memory"):
            raise ValueError(f"Invalid store_backend: {value}")
        return value

    @field_validator("cache_backend")
    @classmethod
    def _check_cache_backend(cls, value: str) -> str:
        if value not in ("none", "memory", "redis"):
            raise ValueError(f"Invalid cache_backend: {value}")
        return value

    @field_validator("pending_backend")
    @classmethod
    def _check_pending_backend(cls, value: str) -> str:
        if value not in ("memory", "redis"):
            raise ValueError(f"Invalid pending_backend: {value}")
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_testing(self) -> bool:
        return self.app_env == "testing"

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def get_settings() -> Settings:
    """Return a settings instance built from the environment."""
    return Settings()
