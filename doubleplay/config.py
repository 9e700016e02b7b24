from datetime import date
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Upstream (KEXP playlist API)
    API_BASE_URL: str = "https://api.kexp.org/v2"
    USER_AGENT: str = "KEXP-DoublePlay-Scanner/1.0"
    REQUEST_TIMEOUT_SECONDS: int = 30
    RATE_LIMIT_DELAY_MS: int = 1000
    BACKOFF_BASE_SECONDS: float = 5.0
    BACKOFF_MAX_SECONDS: float = 300.0
    MAX_PAGES_PER_FETCH: int = 1000

    # Persistence
    DATA_FILE_PATH: str = "double-plays.json"

    # Scanning
    SCAN_INTERVAL_MINUTES: float = 5
    MAX_HOURS_PER_REQUEST: int = 1
    HISTORICAL_SCAN_STOP_DATE: Optional[date] = None  # YYYY-MM-DD
    HISTORICAL_LOOKBACK_DAYS: int = 365  # the API only serves the last year
    BOUNDARY_LOOKAHEAD_MINUTES: int = 10
    RETRY_LOG_THRESHOLD: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 5.0
    RETRY_DELAY_PER_FAILURE_SECONDS: float = 2.0
    SAVE_VALIDATION_FATAL: bool = False

    # Backups
    LOCAL_BACKUP_PATH: Optional[str] = None
    BACKUP_INTERVAL_HOURS: float = 24
    BACKUP_KEEP: int = 10

    # Progress
    PROGRESS_ENABLED: bool = False
    PROGRESS_INTERVAL_SECONDS: int = 10
    PROGRESS_BLOCK_DAYS: int = 7

    # System
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 3000
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
