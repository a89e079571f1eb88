"""Environment-based settings for the RBAC core."""
from datetime import timedelta
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from RBAC_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RBAC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "RBAC Core"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    # SQLite locally, PostgreSQL in production
    database_url: str = "sqlite:///./rbac.db"

    # Session lifecycle
    session_duration_hours: int = 8
    idle_timeout_minutes: int = 30
    warning_threshold_minutes: int = 5
    session_check_interval_seconds: int = 60

    # Bootstrap administrator created when the user store is empty
    seed_admin_username: str = "super.admin"
    seed_admin_email: str = "super.admin@example.com"
    seed_admin_password: str = "change-me-now"

    # bcrypt cost factor; tests lower it to keep hashing fast
    password_hash_rounds: int = 12

    @field_validator("database_url")
    @classmethod
    def _normalize_postgres_scheme(cls, value: str) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if value.startswith("postgres://"):
            return value.replace("postgres://", "postgresql://", 1)
        return value

    @property
    def session_duration(self) -> timedelta:
        return timedelta(hours=self.session_duration_hours)

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.idle_timeout_minutes)

    @property
    def warning_threshold(self) -> timedelta:
        return timedelta(minutes=self.warning_threshold_minutes)

    @property
    def check_interval(self) -> timedelta:
        return timedelta(seconds=self.session_check_interval_seconds)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
