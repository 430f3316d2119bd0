"""Configuration management for Household Settlement."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import UserRole


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HOUSEHOLD_SETTLEMENT_",
        case_sensitive=False,
        extra="ignore",
    )

    # Operator identity used by the CLI
    household_id: str | None = None
    operator_user_id: str | None = None
    operator_role: UserRole = UserRole.MEMBER

    # Database
    database_path: Path = (
        Path.home() / ".household_settlement" / "household_settlement.db"
    )
    busy_timeout_seconds: float = 5.0  # wait for the SQLite write lock

    log_level: str = "INFO"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Set HOUSEHOLD_SETTLEMENT_* environment "
            f"variables or create a .env file.\n"
            f"Error: {e}"
        ) from e
