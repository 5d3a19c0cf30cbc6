"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the session engine.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
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

    # Database Configuration
    # Any SQLAlchemy URL. PostgreSQL in production, SQLite for local runs.
    DATABASE_URL: str = Field(default="sqlite:///./workout_sessions.db")

    # Database Pool Configuration (ignored for SQLite)
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Workout Session Engine
    # Thread pool used to fan out exercise lookups while starting a session.
    SESSION_EXERCISE_LOOKUP_WORKERS: int = Field(default=8, ge=1, le=64)
    # Background workers that deliver session events to subscribers.
    SESSION_EVENT_BUS_WORKERS: int = Field(default=2, ge=1, le=16)
    # When on, every prescribed set must carry each required manual metric.
    SESSION_ENFORCE_REQUIRED_METRICS: bool = Field(default=False)
    # Flag thresholds applied when a session summary changes.
    SESSION_LOW_COMPLIANCE_THRESHOLD: float = Field(default=70.0)
    SESSION_HIGH_RPE_THRESHOLD: float = Field(default=9.0)


# Global settings instance
settings = Settings()
