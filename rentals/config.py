"""Runtime configuration for the rentals service."""

from __future__ import annotations

import os
from dataclasses import dataclass

from rentals.errors import ConfigurationError

DEFAULT_BASE_CURRENCY = "USD"
DEFAULT_LOCAL_CURRENCY = "ARS"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _currency_from_env(name: str, default: str) -> str:
    raw = os.getenv(name, default)
    try:
        return normalize_currency(raw)
    except ValueError:
        return default


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}.") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative.")
    return value


@dataclass(frozen=True)
class Settings:
    """Service settings.

    ``local_currency`` is the currency the EXCHANGE_RATE series is quoted in,
    as local units per one unit of ``base_currency``.
    """

    database_url: str = "sqlite:///./rentals.db"
    frontend_origin: str = "http://localhost:3000"
    base_currency: str = DEFAULT_BASE_CURRENCY
    local_currency: str = DEFAULT_LOCAL_CURRENCY
    notify_look_ahead_days: int = 7
    notify_look_behind_days: int = 15
    log_level: str = "INFO"
    log_format: str = "standard"
    cron_secret: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./rentals.db"),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
            base_currency=_currency_from_env("BASE_CURRENCY", DEFAULT_BASE_CURRENCY),
            local_currency=_currency_from_env("LOCAL_CURRENCY", DEFAULT_LOCAL_CURRENCY),
            notify_look_ahead_days=_int_from_env("NOTIFY_LOOK_AHEAD_DAYS", 7),
            notify_look_behind_days=_int_from_env("NOTIFY_LOOK_BEHIND_DAYS", 15),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "standard"),
            cron_secret=os.getenv("CRON_SECRET") or None,
        )
