"""
Configuration management for the SevaBoard backend.

Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database configuration
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "sevaboard"
    POSTGRES_USER: str = "sevaboard"
    POSTGRES_PASSWORD: str = ""

    # Service configuration
    SERVICE_HOST: str = "0.0.0.0"
    SERVICE_PORT: int = 8008
    LOG_LEVEL: str = "INFO"

    # WebSocket configuration
    WS_HEARTBEAT_INTERVAL: int = 30  # seconds

    # Claim transactions
    TRANSACTION_MAX_ATTEMPTS: int = 5
    TRANSACTION_RETRY_DELAY: float = 0.05  # seconds, doubled per attempt

    # Email relay (EmailJS). Notifications are skipped unless service, template and key are set.
    EMAILJS_API_URL: str = "https://api.emailjs.com/api/v1.0/email/send"
    EMAILJS_SERVICE: Optional[str] = None
    EMAILJS_TEMPLATE: Optional[str] = None
    EMAILJS_PUBLIC_KEY: Optional[str] = None
    EMAILJS_PRIVATE_KEY: Optional[str] = None
    NOTIFICATION_TIMEOUT: float = 10.0  # seconds
    ADMIN_EMAIL: Optional[str] = None
    EMAIL_FROM_NAME: str = "Annakut Vaangi Seva"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def database_url(self) -> str:
        """Construct PostgreSQL connection URL (used by the LISTEN connection)."""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def async_database_url(self) -> str:
        """Construct async PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def notifications_enabled(self) -> bool:
        """True when every EmailJS credential needed to send is present."""
        return bool(self.EMAILJS_SERVICE and self.EMAILJS_TEMPLATE and self.EMAILJS_PUBLIC_KEY)


# Global settings instance
settings = Settings()
