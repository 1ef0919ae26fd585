from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Local store
    DATABASE_URL: str

    # Local store connection pool
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Inventory Counts Backend"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    API_V1_PREFIX: str = "/api/v1"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Branch (remote ERP) databases
    BRANCH_DB_DRIVER: str = "mysql+aiomysql"
    BRANCH_POOL_SIZE: int = 5
    BRANCH_CONNECT_TIMEOUT: int = 10  # Seconds allowed for a ping
    BRANCH_HEALTH_CHECK_INTERVAL: int = 30  # Seconds between health checks
    BRANCH_HEALTH_CHECK_ENABLED: bool = True

    # Cache Settings
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    CACHE_ENABLED: bool = True
    CACHE_TTL_STOCK: int = 300  # 5 minutes for branch stock
    CACHE_TTL_ITEMS: int = 3600  # 1 hour for item records and listings
    CACHE_TTL_CONFIG: int = 1800  # 30 minutes for settings values

    # Count creation limits
    MAX_ITEMS_PER_COUNT: int = 10000
    SEED_CHUNK_SIZE: int = 250  # Codes per IN (...) query against a branch
    MAX_REQUESTS_PER_BATCH: int = 5000
    HISTORY_CHUNK_SIZE: int = 500  # Codes per IN (...) query against the local store

    # Folios
    DEFAULT_COUNT_FOLIO_FORMAT: str = "CNT-{YEAR}{MONTH}-{NUMBER}"
    DEFAULT_REQUEST_FOLIO_FORMAT: str = "REQ-{YEAR}{MONTH}-{NUMBER}"
    FOLIO_NUMBER_PADDING: int = 4

    # Differences
    DEFAULT_TOLERANCE_PERCENTAGE: float = 5.0
    STOCK_COMPARE_TOLERANCE: float = 5.0

    # Outbound notifications
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT: float = 10.0

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
