# marketsync/core/config.py

import os
from functools import lru_cache
from typing import Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Security
    SECRET_KEY: str
    TOKEN_ENCRYPTION_KEY: str = ""  # Derived from SECRET_KEY when empty
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: Optional[str] = None

    # Mercado Livre OAuth / API
    MERCADOLIVRE_CLIENT_ID: str = ""
    MERCADOLIVRE_CLIENT_SECRET: str = ""
    MERCADOLIVRE_REDIRECT_URI: str = ""
    MERCADOLIVRE_API_URL: str = "https://api.mercadolibre.com"
    MERCADOLIVRE_AUTH_URL: str = "https://auth.mercadolivre.com.br/authorization"
    MERCADOLIVRE_SITE_ID: str = "MLB"
    MERCADOLIVRE_DEFAULT_CATEGORY: str = "MLB1648"

    # Marketplace HTTP behaviour
    MARKETPLACE_HTTP_TIMEOUT: float = 30.0
    MARKETPLACE_MAX_ATTEMPTS: int = 3
    RATE_LIMIT_BASE_DELAY: float = 1.0  # seconds
    RATE_LIMIT_MAX_DELAY: float = 60.0

    # Internal collaborators (inventory, catalog, sales)
    INVENTORY_SERVICE_URL: str = "http://localhost:8001"
    CATALOG_SERVICE_URL: str = "http://localhost:8002"
    SALES_SERVICE_URL: str = "http://localhost:8003"
    COLLABORATOR_TIMEOUT: float = 10.0

    # Sync queue / workers
    SYNC_WORKERS_ENABLED: bool = True
    SYNC_WORKER_COUNT: int = 2
    SYNC_BATCH_SIZE: int = 10
    SYNC_POLL_INTERVAL: float = 60.0  # seconds between empty polls
    SYNC_MAX_RETRIES: int = 3
    SYNC_RETRY_BASE_DELAY: float = 30.0  # seconds, 0 = retry immediately
    SYNC_RETRY_MAX_DELAY: float = 900.0
    SYNC_PROCESSING_TIMEOUT_MINUTES: int = 15
    SYNC_REAPER_INTERVAL_MINUTES: int = 5
    SYNC_RETENTION_DAYS: int = 30

    # Token lifecycle
    TOKEN_REFRESH_INTERVAL_MINUTES: int = 60
    TOKEN_REFRESH_THRESHOLD_MINUTES: int = 30
    TOKEN_INLINE_REFRESH_MINUTES: int = 5

    # Order polling
    ORDER_POLL_INTERVAL_MINUTES: int = 10
    ORDER_POLL_LOOKBACK_HOURS: int = 24

    # Scheduler
    SCHEDULER_ENABLED: bool = True

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()


def clear_settings_cache():
    """Clear the settings cache - useful when switching between environments"""
    get_settings.cache_clear()
