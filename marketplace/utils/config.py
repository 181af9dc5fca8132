"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically. Cache tuning lives in
marketplace.cache.config.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Application Settings
    APP_NAME: str = "Marketplace API"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Backing store
    DATABASE_URL: Optional[str] = None

    # Startup behaviour
    CACHE_WARM_ON_STARTUP: bool = True
    CACHE_BACKGROUND_WARMING: bool = False
    CDN_WARM_ON_STARTUP: bool = False

    # Listing defaults
    RECENT_ASSETS_LIMIT: int = 10
    RELATED_ASSETS_LIMIT: int = 6

    # Origin fetches for the edge cache
    ORIGIN_FETCH_TIMEOUT: int = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
