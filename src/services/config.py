"""Ledger configuration from environment variables and .env file."""

import logging
from decimal import Decimal
from typing import Optional

from pydantic import ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class LedgerSettings(BaseSettings):
    """Ledger configuration loaded from environment variables.

    Pydantic automatically loads values from:
    1. OS environment variables (at instantiation time)
    2. .env file (if env_file is set)

    IMPORTANT: Instantiate AFTER environment variables are loaded.
    This is handled by the lazy loader below.
    """

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Allow extra fields in .env file
    )

    database_url: str = "sqlite+aiosqlite:///./ledger.db"

    # Balance at or below which a low-balance alert fires (volume units)
    low_balance_threshold: Decimal = Field(default=Decimal("5"), ge=0)

    # Token issuance
    token_validity_days: int = Field(default=365, ge=1)
    token_code_length: int = Field(default=16, ge=8, le=32)
    token_code_max_attempts: int = Field(default=5, ge=1)

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/ledger.log"

    # Low-balance alerts over Telegram; both empty means alerts go to the log only
    telegram_bot_token: str = ""
    alert_chat_id: str = ""

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    @property
    def telegram_alerts_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.alert_chat_id)


# Lazy loader to ensure environment is loaded before instantiation
_settings_instance: Optional[LedgerSettings] = None


def get_settings() -> LedgerSettings:
    """Get or create the settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = LedgerSettings()
        logger.debug("Ledger settings loaded for database %s", _settings_instance.database_url)
    return _settings_instance


def reset_settings() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    global _settings_instance
    _settings_instance = None


__all__ = ["LedgerSettings", "get_settings", "reset_settings"]
