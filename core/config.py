"""
Centralized configuration for the booking statistics engine.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from core.config import config

    ttl = config.cache.default_ttl_seconds
    tz = config.stats.tz
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class StoreConfig:
    """DuckDB store configuration."""

    db_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("STATS_DB_PATH", str(Path(__file__).parent.parent / "data" / "bookings.duckdb"))
        )
    )
    query_timeout: float = field(default_factory=lambda: _env_float("STATS_QUERY_TIMEOUT", 30.0))

    # Readiness wait (exponential backoff)
    ready_max_attempts: int = field(default_factory=lambda: _env_int("STATS_READY_ATTEMPTS", 10))
    ready_base_delay: float = 1.0
    ready_max_delay: float = 30.0


@dataclass(frozen=True)
class CacheConfig:
    """Result cache configuration."""

    default_ttl_seconds: int = field(default_factory=lambda: _env_int("CACHE_DEFAULT_TTL", 300))  # 5 minutes
    hot_queries_ttl_seconds: int = field(default_factory=lambda: _env_int("CACHE_HOT_TTL", 1800))  # 30 minutes


@dataclass(frozen=True)
class StatsConfig:
    """Aggregation and query configuration."""

    timezone: str = field(default_factory=lambda: os.getenv("STATS_TIMEZONE", "UTC"))

    # Most recent N dates returned by a stats query
    max_result_days: int = 30

    # Realtime fallback bounds
    fallback_row_limit: int = field(default_factory=lambda: _env_int("STATS_FALLBACK_ROW_LIMIT", 50000))

    # Hot queries
    top_limit: int = 5
    top_regions_days: int = 30

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class SchedulerConfig:
    """Rollup schedule (cron fields, in the stats timezone)."""

    enabled: bool = field(
        default_factory=lambda: os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    )
    invalidation_interval_minutes: int = 5
    daily_hour: int = 2
    weekly_day_of_week: str = "mon"
    weekly_hour: int = 3
    monthly_day: int = 1
    monthly_hour: int = 4
    max_history: int = 50


@dataclass(frozen=True)
class WebConfig:
    """Web API configuration."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("WEB_PORT", 8080))
    admin_token: str = field(default_factory=lambda: os.getenv("STATS_ADMIN_TOKEN", ""))

    # Rate limiting
    rate_limit_per_minute: int = 30

    # Request timeouts (seconds); manual recompute and job runs get the long one
    request_timeout: float = field(default_factory=lambda: _env_float("WEB_REQUEST_TIMEOUT", 30.0))
    admin_request_timeout: float = field(default_factory=lambda: _env_float("WEB_ADMIN_REQUEST_TIMEOUT", 300.0))


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()

VERSION = config.version


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: AppConfig = config) -> None:
    """
    Validate configuration values.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    errors = []

    try:
        ZoneInfo(app_config.stats.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"STATS_TIMEZONE '{app_config.stats.timezone}' is not a known timezone")

    if app_config.cache.default_ttl_seconds <= 0:
        errors.append("CACHE_DEFAULT_TTL must be positive")

    if app_config.cache.hot_queries_ttl_seconds < app_config.cache.default_ttl_seconds:
        errors.append("CACHE_HOT_TTL must not be shorter than CACHE_DEFAULT_TTL")

    if app_config.stats.fallback_row_limit <= 0:
        errors.append("STATS_FALLBACK_ROW_LIMIT must be positive")

    if app_config.store.query_timeout <= 0:
        errors.append("STATS_QUERY_TIMEOUT must be positive")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
