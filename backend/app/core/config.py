"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.PRIMARY_ALERT_URL)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Smart Emergency Response"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Persistent store ──
    STORE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    STORE_PREFIX: str = "ser"

    # ── Remote alert endpoints ──
    PRIMARY_ALERT_URL: Optional[str] = None
    ALERT_API_KEY: Optional[str] = None
    FALLBACK_ALERT_URLS: List[str] = []  # tried in order after primary fails
    ALERT_HTTP_TIMEOUT: float = 10.0  # seconds per remote call

    # ── Contact messaging ──
    SMS_PROVIDER: str = "simulation"
    CONTACT_SEND_CONCURRENCY: int = 5
    MAP_URL_TEMPLATE: str = "https://maps.google.com/?q={lat},{lon}"

    # ── Location ──
    LOCATION_TIMEOUT_SECONDS: float = 10.0
    LOCATION_HIGH_ACCURACY: bool = True

    # ── Responder lookup ──
    NEAREST_K: int = 3
    PRIORITY_WEIGHT: float = 1 / 1.5  # < 1.0 promotes the prioritized category
    SERVICE_REGISTRY_PATH: Optional[str] = None  # JSON registry override

    # ── Event history ──
    EVENT_LOG_CAPACITY: int = 100

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
