from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Application Config
    APP_NAME: str = "Parking ERP Sync"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./parking_sync.db"

    # SoftOne Remote API
    SOFTONE_API_URL: str = "https://kolleris.oncloud.gr/s1services"
    SOFTONE_TIMEOUT_SECONDS: float = 120.0
    ERP_TIMEZONE: str = "UTC"

    # Secrets
    ENCRYPTION_KEY: Optional[str] = None  # 64 hex chars (AES-256)
    CRON_SECRET: Optional[str] = None

    # Retry policy
    REMOTE_RETRY_ATTEMPTS: int = 3
    REMOTE_RETRY_DELAY_SECONDS: float = 1.0
    STORE_RETRY_ATTEMPTS: int = 5
    STORE_RETRY_BASE_DELAY_SECONDS: float = 0.5

    # Batching
    DB_BATCH_SIZE: int = 100
    DB_BATCH_SIZE_CONTRACT_LINES: int = 50
    CONTRACT_FANOUT: int = 10
    INDEX_PAGE_SIZE: int = 1000

    # Contract lines (resumable)
    CONTRACT_LINE_PAGE_LIMIT: int = 500
    RECENT_PARENT_MONTHS: int = 2

    # Run ceiling
    SYNC_TIMEOUT_SECONDS: int = 1800

    class Config:
        env_prefix = "PARKING_SYNC_"

settings = Settings()
