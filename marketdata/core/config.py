from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    PROJECT_NAME: str = "marketdata-resilience"
    SERVICE_NAME: str = "portfolio-market-data-api"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    DATABASE_URL: str = "sqlite+aiosqlite:///./marketdata.db"
    DATABASE_ECHO: bool = False
    DATABASE_POOL_SIZE: int = 5
    DATABASE_LOCK_TIMEOUT: float = 30.0

    # Usage quotas
    DAILY_REQUEST_LIMIT: int = 5000
    MONTHLY_REQUEST_LIMIT: int = 100000
    DISABLE_ON_LIMIT: bool = True
    ALERT_THRESHOLDS: List[int] = [50, 80, 90, 95, 99]
    # Admit requests when the usage store itself is failing
    FAIL_OPEN_ON_STORAGE_ERROR: bool = True

    # Cache lifetimes (seconds)
    CACHE_TIME_US_STOCK: int = 3600
    CACHE_TIME_JP_STOCK: int = 3600
    CACHE_TIME_ETF: int = 3600
    CACHE_TIME_MUTUAL_FUND: int = 10800
    CACHE_TIME_EXCHANGE_RATE: int = 21600
    DEFAULT_CACHE_TTL: int = 3600
    FALLBACK_DEFAULT_CACHE_TTL: int = 300

    # Remote fallback snapshot
    FALLBACK_DATA_REFRESH_INTERVAL: int = 3600
    GITHUB_REPO_OWNER: str = "portfolio-manager-team"
    GITHUB_REPO_NAME: str = "market-data-fallbacks"
    GITHUB_BRANCH: str = "main"
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_RAW_BASE_URL: str = "https://raw.githubusercontent.com"
    GITHUB_API_BASE_URL: str = "https://api.github.com"

    # Exchange rates
    EXCHANGE_RATE_API_URL: str = "https://api.exchangerate.host/latest"
    EXCHANGE_RATE_API_KEY: Optional[str] = None
    EXCHANGE_RATE_TIMEOUT: float = 5.0
    DEFAULT_EXCHANGE_RATE: float = 148.5

    HTTP_TIMEOUT: float = 10.0
    DATA_RATE_LIMIT_DELAY: float = 0.5

    # Symbols that keep failing are skipped for a cooldown period
    BLACKLIST_MAX_FAILURES: int = 3
    BLACKLIST_COOLDOWN_DAYS: int = 7

    # Alerts
    ALERT_WEBHOOK_URL: Optional[str] = None

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        extra="ignore"
    )

@lru_cache()
def get_settings():
    return Settings()
