"""
Runtime settings for the lastpress service.
Values come from environment variables and are read once per process.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


_DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


@dataclass
class Settings:
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./lastpress.db"))
    # game timing, in seconds
    countdown_seconds: float = field(default_factory=lambda: _env_float("COUNTDOWN_SECONDS", 5.0))
    heartbeat_interval: float = field(default_factory=lambda: _env_float("HEARTBEAT_INTERVAL_SECONDS", 2.0))
    stale_after: float = field(default_factory=lambda: _env_float("STALE_AFTER_SECONDS", 6.0))
    sweep_interval: float = field(default_factory=lambda: _env_float("SWEEP_INTERVAL_SECONDS", 3.0))
    poll_interval: float = field(default_factory=lambda: _env_float("POLL_INTERVAL_SECONDS", 5.0))
    scheduler_interval: float = field(default_factory=lambda: _env_float("SCHEDULER_INTERVAL_SECONDS", 30.0))
    # lobby rules
    min_players: int = field(default_factory=lambda: _env_int("MIN_PLAYERS", 2))
    max_players: int = field(default_factory=lambda: _env_int("MAX_PLAYERS", 100))
    share_code_length: int = field(default_factory=lambda: _env_int("SHARE_CODE_LENGTH", 6))
    daily_start_hour: int = field(default_factory=lambda: _env_int("DAILY_START_HOUR", 12))
    daily_timezone: str = field(default_factory=lambda: os.getenv("DAILY_TIMEZONE", "America/New_York"))
    # integrations
    nats_url: Optional[str] = field(default_factory=lambda: os.getenv("NATS_URL") or None)
    cors_origins: List[str] = field(default_factory=lambda: _split_csv(os.getenv("CORS_ORIGINS")) or list(_DEFAULT_ORIGINS))


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    global _settings
    _settings = Settings()
    return _settings
