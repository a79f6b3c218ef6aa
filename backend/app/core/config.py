from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "HireBuddy Referral API"
    debug: bool = True
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    database_url: str = "sqlite:///./referrals.db"
    redis_url: str = "redis://localhost:6379/0"

    jwt_secret: str = "change-this-secret-key"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7

    rate_limit_enabled: bool = True
    rate_limit_backend: str = "memory"
    rate_limit_standard_limit: int = 100
    rate_limit_standard_window_seconds: int = 15 * 60
    rate_limit_elevated_limit: int = 1000
    rate_limit_elevated_window_seconds: int = 15 * 60

    referral_validity_days: int = 30
    referral_premium_threshold: int = 10
    referral_premium_duration_days: int | None = None

    log_level: str = "INFO"
    log_format: str = "console"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
