"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Field Service Automation Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./automation.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker for the beat-driven deployment)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Automation processor
    AUTOMATION_AUTOSTART: bool = True
    AUTOMATION_POLL_INTERVAL_SECONDS: float = 30.0
    AUTOMATION_BATCH_SIZE: int = 10
    AUTOMATION_WORKFLOW_CACHE_TTL_SECONDS: float = 300.0
    AUTOMATION_MAX_RETRIES: int = 3
    AUTOMATION_PENDING_EXPIRY_SECONDS: float = 3600.0
    AUTOMATION_INLINE_DELAY_MAX_SECONDS: float = 5.0
    AUTOMATION_PROCESSED_SET_MAX: int = 10_000
    # Most recent processed ids excluded from the pending fetch
    AUTOMATION_FETCH_EXCLUSION_WINDOW: int = 100
    # In-process stale pending sweep (the beat deployment uses Celery instead)
    AUTOMATION_SWEEP_INTERVAL_SECONDS: float = 600.0
    # Read-modify-write metrics race under multiple instances; off unless forced
    AUTOMATION_ALLOW_NON_ATOMIC_METRICS: bool = False

    # Variable resolution
    DEFAULT_TIMEZONE: str = "America/New_York"
    DEFAULT_COMPANY_NAME: str = "Our Company"

    # Channel senders (edge functions fronting the SMS / email providers)
    SMS_ENDPOINT_URL: str = ""
    EMAIL_ENDPOINT_URL: str = ""
    CHANNEL_API_KEY: str = ""
    CHANNEL_TIMEOUT_SECONDS: float = 15.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    def validate_channels(self) -> None:
        """Validate that channel endpoints are configured in production.

        Raises:
            RuntimeError: If production environment is missing an endpoint URL
        """
        if self.is_production:
            if not self.SMS_ENDPOINT_URL or not self.EMAIL_ENDPOINT_URL:
                raise RuntimeError(
                    "CRITICAL: SMS_ENDPOINT_URL and EMAIL_ENDPOINT_URL must be set in production."
                )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
