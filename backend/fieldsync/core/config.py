from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "BCA Field Sync"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    LOCAL_STORE_URL: str = "sqlite:///./bca_offline.db"

    # Remote BCA API
    REMOTE_API_URL: Optional[str] = None
    REMOTE_API_KEY: Optional[str] = None
    REMOTE_API_TIMEOUT: float = 30.0
    REMOTE_MOCK_MODE: bool = False  # Canned responses instead of network calls

    # Sync behaviour
    CIRCUIT_BREAKER_THRESHOLD: int = 3  # Consecutive failures that abort a drain pass
    AUTO_SYNC_ON_RECONNECT: bool = True
    CONNECTIVITY_PROBE_INTERVAL: float = 0.0  # Seconds; 0 disables the health probe

    # Local storage limits
    MAX_STORAGE_MB: int = 500
    MAX_PHOTO_SIZE_MB: int = 10
    SYNCED_PHOTO_TTL_DAYS: int = 30

    # Photo compression
    COMPRESSION_MIN_BYTES: int = 500 * 1024

    NOTIFICATIONS_ENABLED: bool = True

    class Config:
        env_file = ".env"


settings = Settings()
