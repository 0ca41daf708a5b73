"""
Centralized configuration with environment variable overrides.

Operating hours, grid granularity, offer hold time and server settings
are configurable here. Nothing is hardcoded in catalog or engine logic.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import time

from dotenv import load_dotenv

from evbooking.utils import minutes_of, parse_hhmm

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_time(env_var: str, default: str) -> time:
    """Parse an HH:MM clock time from an env var. ``24:00`` means end of day."""
    raw = os.getenv(env_var, default)
    try:
        return parse_hhmm(raw)
    except (ValueError, AttributeError):
        raise ValueError(
            f"Invalid HH:MM time for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class CatalogConfig:
    """Default operating hours and calendar grid for every station."""

    open_time: time = _safe_time("OPEN_TIME", "06:00")
    close_time: time = _safe_time("CLOSE_TIME", "22:00")
    granularity_minutes: int = _safe_int("SLOT_GRANULARITY_MINUTES", "30")
    default_window_minutes: int = _safe_int("DEFAULT_WINDOW_MINUTES", "60")
    horizon_days: int = _safe_int("CATALOG_HORIZON_DAYS", "14")


@dataclass(frozen=True)
class WaitlistConfig:
    """Offer hold and commit retry policy."""

    offer_hold_minutes: int = _safe_int("OFFER_HOLD_MINUTES", "15")
    commit_retries: int = _safe_int("COMMIT_RETRIES", "1")


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server settings for the engine API."""

    host: str = os.getenv("API_HOST", "127.0.0.1")
    port: int = _safe_int("API_PORT", "8000")
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    waitlist: WaitlistConfig = field(default_factory=WaitlistConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    app_name: str = os.getenv("APP_NAME", "ev-booking-engine")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    catalog = config.catalog
    if catalog.granularity_minutes < 1 or 60 % catalog.granularity_minutes:
        raise ValueError(
            "SLOT_GRANULARITY_MINUTES must be a positive divisor of 60, "
            f"got {catalog.granularity_minutes}"
        )
    open_minutes = minutes_of(catalog.open_time)
    close_minutes = minutes_of(catalog.close_time)
    if open_minutes >= close_minutes:
        raise ValueError(
            f"OPEN_TIME must be before CLOSE_TIME, got {catalog.open_time} >= {catalog.close_time}"
        )
    if open_minutes % catalog.granularity_minutes or close_minutes % catalog.granularity_minutes:
        raise ValueError("OPEN_TIME and CLOSE_TIME must lie on the slot grid")
    if (
        catalog.default_window_minutes < catalog.granularity_minutes
        or catalog.default_window_minutes % catalog.granularity_minutes
    ):
        raise ValueError(
            "DEFAULT_WINDOW_MINUTES must be a multiple of SLOT_GRANULARITY_MINUTES, "
            f"got {catalog.default_window_minutes}"
        )
    if catalog.horizon_days < 0:
        raise ValueError(f"CATALOG_HORIZON_DAYS must be >= 0, got {catalog.horizon_days}")
    if config.waitlist.offer_hold_minutes < 1:
        raise ValueError(
            f"OFFER_HOLD_MINUTES must be >= 1, got {config.waitlist.offer_hold_minutes}"
        )
    if config.waitlist.commit_retries < 0:
        raise ValueError(
            f"COMMIT_RETRIES must be >= 0, got {config.waitlist.commit_retries}"
        )
    if not 0 < config.server.port < 65536:
        raise ValueError(f"API_PORT must be between 1 and 65535, got {config.server.port}")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.app_name)
    return config


# Singleton instance
settings = load_config()
