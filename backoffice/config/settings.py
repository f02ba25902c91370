"""
Centralized configuration management using Pydantic Settings.
Validates environment variables on startup and provides typed config access.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """
    Application settings with validation.
    Loads from environment variables with fallback to .env file.
    """

    # Database Configuration
    database_url_sqlite: str = Field(
        default="sqlite+aiosqlite:///./backoffice.db",
        description="SQLite database URL for local development"
    )
    database_echo: bool = Field(
        default=False,
        description="Log all SQL queries"
    )
    database_connect_timeout_seconds: float = Field(
        default=10.0,
        description="How long a writer waits on a locked database before failing"
    )

    # Overdue Monitor Configuration
    overdue_check_interval_seconds: int = 60
    due_soon_days: int = 3

    # Event Bus Configuration
    event_bus_max_queue_size: int = 1000

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Environment
    environment: str = "development"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def database_url(self) -> str:
        """
        Returns the SQLite database URL.
        """
        return self.database_url_sqlite

    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"

    def validate_critical_config(self):
        """
        Validate critical configuration on startup.
        Raises ValueError if critical config is missing.
        """
        errors = []

        if not self.database_url:
            errors.append("DATABASE_URL_SQLITE must be set")

        if self.is_production() and self.debug:
            errors.append("DEBUG must be disabled in production")

        if self.overdue_check_interval_seconds <= 0:
            errors.append("OVERDUE_CHECK_INTERVAL_SECONDS must be positive")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    def get_connection_args(self) -> dict:
        """Get SQLite-specific connection arguments"""
        return {
            "timeout": self.database_connect_timeout_seconds,
            "check_same_thread": False,
        }


# Global settings instance
settings = Settings()
