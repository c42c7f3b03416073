"""
Runtime configuration, read from the environment (and a local .env file).
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env(name: str, default: str, cast: Callable[[str], Any] = str):
    return field(default_factory=lambda: cast(os.getenv(name, default)))


@dataclass
class Settings:
    # Scheduler
    tick_interval_seconds: float = _env("BOOST_TICK_INTERVAL_SECONDS", "1.0", float)
    max_order_lifetime_hours: float = _env("BOOST_MAX_ORDER_LIFETIME_HOURS", "24", float)

    # Simulated fulfillment
    ms_per_subscriber: int = _env("BOOST_MS_PER_SUBSCRIBER", "100", int)
    max_progress_step: float = _env("BOOST_MAX_PROGRESS_STEP", "5.0", float)

    # Wallet
    referral_bonus: int = _env("BOOST_REFERRAL_BONUS", "50", int)
    min_deposit: int = _env("BOOST_MIN_DEPOSIT", "10", int)
    min_withdrawal: int = _env("BOOST_MIN_WITHDRAWAL", "100", int)
    daily_withdrawal_limit: int = _env("BOOST_DAILY_WITHDRAWAL_LIMIT", "50000", int)

    # Notifications
    event_history_size: int = _env("BOOST_EVENT_HISTORY", "100", int)

    # Logging / HTTP
    log_level: str = _env("LOG_LEVEL", "INFO")
    log_json: bool = field(default_factory=lambda: _env_bool("LOG_JSON", False))
    cors_origins: list[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    @property
    def max_order_lifetime_seconds(self) -> float:
        return self.max_order_lifetime_hours * 3600


@lru_cache
def get_settings() -> Settings:
    return Settings()
