"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the engine, the API and the workers.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Remote Store Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="bounce")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. sqlite for local runs and tests)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")
    ENTITLEMENT_SWEEP_MINUTES: int = Field(default=15, ge=1, le=59)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    CORS_ORIGINS: Optional[str] = Field(default=None)  # comma-separated

    # Generative content (Gemini)
    GOOGLE_API_KEY: Optional[str] = Field(default=None)
    GEMINI_MODEL: str = Field(default="gemini-2.5-flash")
    GEMINI_TEMPERATURE: float = Field(default=0.7)
    GEMINI_MAX_OUTPUT_TOKENS: int = Field(default=1024)

    # Local durable replica
    LOCAL_STATE_DIR: str = Field(default=".bounce")
    LOCAL_STATE_KEY: str = Field(default="bounce_state")

    # Remote HTTP client (device side)
    REMOTE_API_BASE_URL: str = Field(default="http://localhost:8000")
    REMOTE_API_TIMEOUT: int = Field(default=10)

    # Privileged entitlement writes (payment verification service only).
    # Unset means the endpoint refuses every request.
    ENTITLEMENT_ADMIN_TOKEN: Optional[str] = Field(default=None)

    # Weekly review content cache
    WEEKLY_REVIEW_CACHE_TTL: int = Field(default=8 * 24 * 3600)

    # Rules engine knobs
    WEEKLY_REVIEW_COOLDOWN_DAYS: int = Field(default=4, ge=1)
    WEEKLY_REVIEW_WEEKS_BACK: int = Field(default=3, ge=2, le=8)
    NOVELTY_REVIEW_INTERVAL: int = Field(default=2, ge=1)
    # Durable "has ever been premium" guard for the first-upgrade shield.
    # False restores the instantaneous previous-state check.
    BONUS_SHIELD_REQUIRES_FIRST_EVER_PREMIUM: bool = Field(default=True)


# Global settings instance
settings = Settings()
