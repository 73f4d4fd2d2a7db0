"""
Centralized settings reader for the Spot Instance Monitor.

Reads all configuration from environment variables (loaded from .env file).
Import the `settings` singleton from anywhere in the project:

    from config.settings import settings
    print(settings.CHECK_INTERVAL)

Call ``settings.validate()`` once at startup; missing credentials raise
:class:`ConfigError` and the process must not start.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

_TRUE_VALUES = {"1", "t", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "f", "false", "no", "n", "off"}


class ConfigError(Exception):
    """Raised when a required setting is missing or inconsistent."""


def _env(key: str, default: str = "") -> str:
    """Read an environment variable with an optional default."""
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    """Read an integer variable; unparseable values fall back to *default*."""
    value = os.getenv(key, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    """Read a boolean variable; unrecognized values fall back to *default*."""
    value = os.getenv(key, "").strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


@dataclass(frozen=True)
class Settings:
    """Immutable application settings populated from environment variables."""

    # ── Aliyun ──────────────────────────────────────────
    ALIYUN_ACCESS_KEY_ID: str = field(default_factory=lambda: _env("ALIYUN_ACCESS_KEY_ID"))
    ALIYUN_ACCESS_KEY_SECRET: str = field(default_factory=lambda: _env("ALIYUN_ACCESS_KEY_SECRET"))
    ALIYUN_DEFAULT_REGION: str = field(default_factory=lambda: _env("ALIYUN_DEFAULT_REGION", "cn-hangzhou"))

    # ── Telegram ────────────────────────────────────────
    TELEGRAM_ENABLED: bool = field(default_factory=lambda: _env_bool("TELEGRAM_ENABLED", True))
    TELEGRAM_BOT_TOKEN: str = field(default_factory=lambda: _env("TELEGRAM_BOT_TOKEN"))
    TELEGRAM_CHAT_ID: str = field(default_factory=lambda: _env("TELEGRAM_CHAT_ID"))

    # ── Scheduling (seconds) ────────────────────────────
    CHECK_INTERVAL: int = field(default_factory=lambda: _env_int("CHECK_INTERVAL", 60))
    DISCOVERY_INTERVAL: int = field(default_factory=lambda: _env_int("DISCOVERY_INTERVAL", 0))

    # ── Remediation ─────────────────────────────────────
    RETRY_COUNT: int = field(default_factory=lambda: _env_int("RETRY_COUNT", 3))
    RETRY_INTERVAL: int = field(default_factory=lambda: _env_int("RETRY_INTERVAL", 30))
    NOTIFY_COOLDOWN: int = field(default_factory=lambda: _env_int("NOTIFY_COOLDOWN", 300))

    # ── Health check ────────────────────────────────────
    HEALTH_CHECK_ENABLED: bool = field(default_factory=lambda: _env_bool("HEALTH_CHECK_ENABLED", True))
    HEALTH_CHECK_TIMEOUT: int = field(default_factory=lambda: _env_int("HEALTH_CHECK_TIMEOUT", 300))
    HEALTH_CHECK_INTERVAL: int = field(default_factory=lambda: _env_int("HEALTH_CHECK_INTERVAL", 10))

    # ── Logging ─────────────────────────────────────────
    LOG_LEVEL: str = field(default_factory=lambda: _env("LOG_LEVEL", "info"))
    LOG_FILE: str = field(default_factory=lambda: _env("LOG_FILE"))

    def validate(self) -> None:
        """Raise :class:`ConfigError` if a required credential is missing."""
        if not self.ALIYUN_ACCESS_KEY_ID:
            raise ConfigError("ALIYUN_ACCESS_KEY_ID is required")
        if not self.ALIYUN_ACCESS_KEY_SECRET:
            raise ConfigError("ALIYUN_ACCESS_KEY_SECRET is required")

        if self.TELEGRAM_ENABLED:
            if not self.TELEGRAM_BOT_TOKEN:
                raise ConfigError("TELEGRAM_BOT_TOKEN is required when Telegram is enabled")
            if not self.TELEGRAM_CHAT_ID:
                raise ConfigError("TELEGRAM_CHAT_ID is required when Telegram is enabled")

        if self.RETRY_COUNT < 1:
            raise ConfigError("RETRY_COUNT must be at least 1")
        if self.CHECK_INTERVAL < 1:
            raise ConfigError("CHECK_INTERVAL must be at least 1 second")


# Singleton — import this everywhere
settings = Settings()
