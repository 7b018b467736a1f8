"""Application configuration utilities."""
from functools import lru_cache
from typing import List
import sys

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


DEMO_API_KEY = "mock_api_key_for_demo"


class Settings(BaseSettings):
    """Central application configuration loaded from environment variables."""

    app_name: str = Field(default="Linq CRM Integration API", env="APP_NAME")  # type: ignore[call-overload]
    app_env: str = Field(default="development", env="APP_ENV")  # type: ignore[call-overload]
    app_debug: bool = Field(default=False, env="APP_DEBUG")  # type: ignore[call-overload]
    database_url: str = Field(default="sqlite:///./crm_integration.db", env="DATABASE_URL")  # type: ignore[call-overload]

    # AcmeCRM
    acme_crm_base_url: str = Field(default="https://api.acmecrm.com/v1", env="ACME_CRM_BASE_URL")  # type: ignore[call-overload]
    acme_crm_api_key: str = Field(default=DEMO_API_KEY, env="ACME_CRM_API_KEY")  # type: ignore[call-overload]
    acme_crm_timeout: float = Field(default=30.0, env="ACME_CRM_TIMEOUT")  # type: ignore[call-overload]
    acme_crm_open_timeout: float = Field(default=10.0, env="ACME_CRM_OPEN_TIMEOUT")  # type: ignore[call-overload]
    acme_crm_retry_count: int = Field(default=3, env="ACME_CRM_RETRY_COUNT")  # type: ignore[call-overload]
    acme_crm_retry_interval: float = Field(default=0.5, env="ACME_CRM_RETRY_INTERVAL")  # type: ignore[call-overload]
    acme_crm_rate_limit_per_minute: int = Field(default=100, env="ACME_CRM_RATE_LIMIT_PER_MINUTE")  # type: ignore[call-overload]
    acme_crm_rate_limit_window: float = Field(default=60.0, env="ACME_CRM_RATE_LIMIT_WINDOW")  # type: ignore[call-overload]

    # Sync job / task queue
    crm_sync_max_attempts: int = Field(default=3, env="CRM_SYNC_MAX_ATTEMPTS")  # type: ignore[call-overload]
    crm_sync_rate_limit_delay: int = Field(default=300, env="CRM_SYNC_RATE_LIMIT_DELAY")  # type: ignore[call-overload]
    crm_sync_retry_base_delay: int = Field(default=60, env="CRM_SYNC_RETRY_BASE_DELAY")  # type: ignore[call-overload]
    crm_sync_lease_seconds: int = Field(default=300, env="CRM_SYNC_LEASE_SECONDS")  # type: ignore[call-overload]
    worker_poll_interval: int = Field(default=5, env="WORKER_POLL_INTERVAL")  # type: ignore[call-overload]

    # Application
    secret_key: str = Field(default="dev-secret-key-change-in-production-min-32-characters", env="SECRET_KEY")  # type: ignore[call-overload]
    jwt_audience: str = Field(default="linq-crm-integration", env="JWT_AUDIENCE")  # type: ignore[call-overload]
    jwt_expiration_hours: int = Field(default=24, env="JWT_EXPIRATION_HOURS")  # type: ignore[call-overload]
    cors_origins: List[str] = Field(default=["https://yourfrontend.com", "https://linq.app"], env="CORS_ORIGINS")  # type: ignore[call-overload]

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        """Validate that secret_key is not using default value in production."""
        app_env = info.data.get("app_env", "development")
        if app_env == "production" and v.startswith("dev-"):
            print("ERROR: Using default SECRET_KEY in production is not allowed!")
            sys.exit(1)
        if len(v) < 32:
            print(f"ERROR: SECRET_KEY must be at least 32 characters (current: {len(v)})")
            sys.exit(1)
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.app_debug else "INFO"

    @property
    def debug_sql(self) -> bool:
        return self.app_debug

    @property
    def acme_demo_mode(self) -> bool:
        """Demo mode when no real API key is configured or under tests."""
        return self.acme_crm_api_key == DEMO_API_KEY or self.app_env == "test"


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of application settings."""

    return Settings()


settings = get_settings()
