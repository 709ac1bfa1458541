"""Application configuration using Pydantic Settings."""

import json
import os
import secrets
import warnings
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from unibox.exceptions import DefaultSecretKeyError, ShortSecretKeyError

# Minimum length for JWT secret key in production
MIN_JWT_SECRET_LENGTH = 32

# Random per-process secret when JWT_SECRET_KEY is not provided
_ENV_JWT_SECRET = os.environ.get("JWT_SECRET_KEY")
if _ENV_JWT_SECRET:
    _DEV_JWT_SECRET = _ENV_JWT_SECRET
else:
    _DEV_JWT_SECRET = secrets.token_urlsafe(48)
    if os.environ.get("ENVIRONMENT", "development") != "test":
        warnings.warn(
            "JWT_SECRET_KEY not set - using auto-generated secret. "
            "Tokens will not survive a server restart. "
            "Set JWT_SECRET_KEY in environment for persistent sessions.",
            stacklevel=2,
        )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Application
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    PORT: int = 3001
    DEBUG: bool = False

    # CORS - stored as raw string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS_RAW: str = Field(
        default='["http://localhost:3000"]',
        validation_alias="CORS_ORIGINS",
    )

    @property
    def CORS_ORIGINS(self) -> list[str]:  # noqa: N802 - matches env var name
        """Parse CORS origins from JSON array, comma-separated, or plain string."""
        v = self.CORS_ORIGINS_RAW.strip() if self.CORS_ORIGINS_RAW else ""
        if not v:
            return ["http://localhost:3000"]
        if v.startswith("["):
            try:
                parsed = json.loads(v)
                return [str(x) for x in parsed] if isinstance(parsed, list) else [v]
            except json.JSONDecodeError:
                pass
        if "," in v:
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return [v]

    # Database
    # Production uses postgresql+asyncpg; sqlite+aiosqlite is supported for dev and tests
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/unibox"

    # Database connection pool settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    SQLITE_BUSY_TIMEOUT_MS: int = 30000

    # Redis (rate limit storage and optional Socket.IO cross-instance manager)
    REDIS_URL: str | None = None
    SOCKETIO_USE_REDIS: bool = False

    # Auth
    JWT_SECRET_KEY: str = _DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    COOKIE_ACCESS_TOKEN: str = "unibox_access"

    # Permissive mode: requests without a token are mapped to DEFAULT_USER_ID.
    # Must stay off in production.
    AUTH_PERMISSIVE: bool = False
    SOCKET_ALLOW_ANONYMOUS: bool = False
    DEFAULT_USER_ID: str = "default-user"

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_jwt_secret(cls, v: str, _info: object) -> str:
        """Validate JWT secret meets security requirements in production."""
        env = os.environ.get("ENVIRONMENT", "development")
        if env == "production":
            if not os.environ.get("JWT_SECRET_KEY"):
                raise DefaultSecretKeyError
            if len(v) < MIN_JWT_SECRET_LENGTH:
                raise ShortSecretKeyError
        return v

    # UniPile relay
    UNIPILE_BASE_URL: str = "https://api.unipile.com"
    UNIPILE_API_KEY: str | None = None
    UNIPILE_WEBHOOK_SECRET: str | None = None
    HTTP_TIMEOUT_UNIPILE: float = 30.0

    # Inbound email webhook shared secret (X-Webhook-Token header)
    EMAIL_WEBHOOK_TOKEN: str | None = None

    # Email configuration
    EMAIL_BACKEND: str = "console"  # console, smtp, sendgrid
    EMAIL_FROM_ADDRESS: str = "inbox@unibox.dev"
    EMAIL_FROM_NAME: str = "Unibox"
    EMAIL_REPLY_TO: str = "inbox@unibox.dev"

    # SMTP settings (when EMAIL_BACKEND=smtp)
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True

    # SendGrid settings (when EMAIL_BACKEND=sendgrid)
    SENDGRID_API_KEY: str | None = None
    SENDGRID_API_URL: str = "https://api.sendgrid.com/v3/mail/send"
    HTTP_TIMEOUT_SENDGRID: float = 30.0

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_STORAGE_URL: str | None = None  # Defaults to REDIS_URL, then in-memory

    # Sentry
    SENTRY_DSN: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_PROFILES_SAMPLE_RATE: float = 0.1

    # ============== HTTP Client Timeouts ==============
    HTTP_TIMEOUT_DEFAULT: float = 30.0

    # ============== Storage Retry Settings ==============
    STORAGE_RETRY_MAX_ATTEMPTS: int = 4  # Total attempts including the first
    STORAGE_RETRY_INITIAL_DELAY: float = 0.05  # seconds
    STORAGE_RETRY_BACKOFF: float = 2.0  # Exponential backoff multiplier

    # ============== Conversation Serialization ==============
    CONVERSATION_LOCK_TIMEOUT: float = 10.0  # seconds to wait for a conversation lock

    # ============== Fan-out Settings ==============
    FANOUT_SESSION_BUFFER: int = 256  # Pending events per live session before eviction
    FANOUT_SEND_TIMEOUT: float = 5.0  # Seconds allowed for a single socket emit

    # ============== Messages ==============
    MESSAGES_PAGE_LIMIT_MAX: int = 200
    MESSAGE_BODY_MAX_KB: int = 256

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
