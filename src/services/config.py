"""Application configuration from environment variables and .env file."""

import logging

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class AppConfig(BaseSettings):
    """Settings for the API server, billing runs and notifications.

    Pydantic loads values from:
    1. OS environment variables (at instantiation time)
    2. .env file in the working directory
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///./drawdown.db"
    """SQLAlchemy database URL (default: local SQLite)"""

    log_level: str = "INFO"
    log_file: str = "logs/server.log"

    locale: str = "en_AU"
    currency: str | None = None
    """ISO 4217 code; derived from the locale territory when unset"""

    billing_actor: str = "automation-system"
    """Actor recorded on transactions created by billing runs"""

    billing_scope: str = "default"
    """Partition serialised by the one-run-per-day lock"""

    billing_catch_up: bool = True
    """Bill contracts whose next run date is in the past, not only today"""

    expiry_threshold_days: int = 30
    """Window for expiring-contract lists and summaries"""

    notify_recipients: str = ""
    """Comma-separated addresses that receive billing run reports"""

    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{value}'")
        return level

    @field_validator("expiry_threshold_days")
    @classmethod
    def _check_threshold(cls, value: int) -> int:
        if value < 0:
            raise ValueError("EXPIRY_THRESHOLD_DAYS must not be negative")
        return value

    @field_validator("port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError(f"PORT out of range: {value}")
        return value

    @property
    def recipients(self) -> list[str]:
        return [item.strip() for item in self.notify_recipients.split(",") if item.strip()]


def load_config() -> AppConfig:
    """Load configuration.

    Priority (highest to lowest): environment variables, .env file, defaults.

    Raises:
        ValueError: If a setting is present but invalid
    """
    try:
        config = AppConfig()
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e
    logger.debug("Loaded configuration (database=%s)", config.database_url.split("://")[0])
    return config


__all__ = ["AppConfig", "load_config"]
