"""
Core configuration settings for the migration bridge.
"""

import logging
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "Entra Migration Bridge"
    ENVIRONMENT: str = "development"  # staging, production, development
    DEBUG: bool = False

    # Database - constructed from individual components unless DB_URL is given
    DB_URL: Optional[str] = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_USER: str = "user"
    DB_PASSWORD: str = "pass"
    DB_NAME: str = "db"

    # Database Pool Configuration
    DATABASE_POOL_SIZE: int = 5
    DATABASE_POOL_RECYCLE: int = 300

    @property
    def DATABASE_URL(self) -> str:
        """Full SQLAlchemy URL, preferring an explicit DB_URL."""
        if self.DB_URL:
            return self.DB_URL
        return f"postgresql+psycopg2://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Entra External ID (app registration with User.ReadWrite.All)
    ENTRA_TENANT_ID: Optional[str] = None
    ENTRA_CLIENT_ID: Optional[str] = None
    ENTRA_CLIENT_SECRET: Optional[str] = None
    ENTRA_TENANT_NAME: Optional[str] = None  # e.g. contoso.onmicrosoft.com
    # appId of the b2c-extensions-app that owns custom user attributes
    ENTRA_EXTENSIONS_APP_ID: Optional[str] = None

    GRAPH_API_BASE: str = "https://graph.microsoft.com/v1.0"
    GRAPH_SCOPE: str = "https://graph.microsoft.com/.default"
    GRAPH_TIMEOUT_SECONDS: float = 10.0
    GRAPH_MAX_RETRIES: int = 4
    GRAPH_BACKOFF_BASE_SECONDS: float = 1.0
    GRAPH_BACKOFF_MAX_SECONDS: float = 30.0
    EXTENSION_SCHEMA_TTL_SECONDS: int = 3600

    @property
    def ENTRA_AUTHORITY(self) -> str:
        """Token endpoint authority for the configured tenant."""
        return f"https://login.microsoftonline.com/{self.ENTRA_TENANT_ID}"

    # Redis for Graph token caching (shared across workers)
    REDIS_URL: Optional[str] = None

    # Admin API key for migration and password endpoints
    ADMIN_API_KEY: Optional[str] = None

    # Shared secret for Entra custom authentication extension callbacks
    WEBHOOK_SHARED_SECRET: Optional[str] = None

    # Dummy user detection for the sign-in webhooks
    DUMMY_USER_ATTRIBUTE: str = "extensionAttribute1"
    DUMMY_USER_FLAG_VALUE: str = "Y"

    # Session tokens issued by the legacy login endpoint
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_DAYS: int = 7

    # Password hashing
    BCRYPT_ROUNDS: int = 10
    TEMPORARY_PASSWORD_LENGTH: int = 16

    # Bulk migration defaults (caller validation bounds live in the schemas)
    MIGRATION_DEFAULT_BATCH_SIZE: int = 50
    MIGRATION_DEFAULT_DELAY_MS: int = 2000

    # Temporary password notifications
    SES_REGION: str = "eu-west-1"
    SES_FROM_EMAIL: str = "no-reply@example.com"
    NOTIFICATION_QUEUE_SIZE: int = 1000
    NOTIFICATION_WORKERS: int = 2
    NOTIFICATION_MAX_ATTEMPTS: int = 3
    NOTIFICATION_RETRY_BASE_SECONDS: float = 2.0

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    @field_validator("TEMPORARY_PASSWORD_LENGTH")
    @classmethod
    def validate_temporary_password_length(cls, v: int) -> int:
        """Entra rejects passwords shorter than 8 characters."""
        if v < 8:
            raise ValueError("TEMPORARY_PASSWORD_LENGTH must be at least 8")
        return v

    @field_validator("BCRYPT_ROUNDS")
    @classmethod
    def validate_bcrypt_rounds(cls, v: int) -> int:
        if not 4 <= v <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")
        return v

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env")


settings = Settings()
