"""
Configuration management for the application.
Loads settings from environment variables using Pydantic Settings.
"""

from pydantic_settings import BaseSettings
from pydantic import model_validator


DEV_SECRET_KEY = "petpro-dev-secret-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./petpro.sqlite"
    ENVIRONMENT: str = "development"

    @property
    def database_url_asyncpg(self) -> str:
        """
        Transform DATABASE_URL to use the appropriate async driver.
        - PostgreSQL: postgresql+asyncpg://...
        - SQLite: sqlite+aiosqlite:///...
        """
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.DATABASE_URL

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    # Security
    SECRET_KEY: str = DEV_SECRET_KEY
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 days

    # Application
    APP_NAME: str = "PetPro API"
    DEBUG: bool = False
    CORS_ORIGINS: str = "*"
    SEED_DEMO_DATA: bool = False

    # Logging / observability
    LOG_FILE: str = "logs.txt"
    LOG_BUFFER_SIZE: int = 1000
    LOG_LEVEL: str = "INFO"

    # Login rate limiting (per client IP)
    LOGIN_RATE_LIMIT_MAX: int = 10
    LOGIN_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    # Email Configuration (Postmark)
    POSTMARK_ENABLED: bool = True
    POSTMARK_SERVER_TOKEN: str = ""
    POSTMARK_FROM_EMAIL: str = "noreply@petpro.app"
    POSTMARK_FROM_NAME: str = "PetPro"
    EMAIL_TEST_MODE: bool = False

    # Reminders
    REMINDER_LEAD_HOURS: int = 24
    REMINDER_SCHEDULER_ENABLED: bool = True
    REMINDER_INTERVAL_MINUTES: int = 15
    REMINDER_BATCH_SIZE: int = 50

    # Subscription Settings
    TRIAL_PERIOD_DAYS: int = 14
    SUBSCRIPTION_SCHEDULER_ENABLED: bool = True
    DEFAULT_TIMEZONE: str = "America/Sao_Paulo"

    # File uploads
    UPLOAD_DIR: str = "uploads"
    ATTACHMENT_MAX_BYTES: int = 10 * 1024 * 1024
    AVATAR_MAX_BYTES: int = int(7.5 * 1024 * 1024)

    # Bootstrap Super Admin Configuration
    SEED_SUPERADMIN_EMAIL: str = ""
    SEED_SUPERADMIN_PASSWORD: str = ""
    SEED_SUPERADMIN_FULL_NAME: str = "Platform Administrator"

    @model_validator(mode="after")
    def check_secret_key(self):
        if self.is_production and self.SECRET_KEY == DEV_SECRET_KEY:
            raise ValueError("SECRET_KEY must be set in production")
        return self

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# Singleton instance - import this in other modules
settings = Settings()
