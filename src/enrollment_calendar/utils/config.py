from pydantic import Field
from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    # API settings
    API_PREFIX: str = "/api"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS settings
    CORS_ORIGINS: List[str] = Field(
        default=["http://localhost:3000"]
    )

    # Microsoft Graph settings
    MS_CLIENT_ID: str = ""
    MS_CLIENT_SECRET: str = ""
    MS_REDIRECT_URI: str = "http://localhost:8008/api/auth/microsoft/callback"
    MS_TENANT_ID: str = ""
    GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_TIMEOUT_SECONDS: float = 30.0

    # Retry policy for idempotent remote calls
    REMOTE_RETRY_ATTEMPTS: int = 3
    REMOTE_RETRY_WAIT_SECONDS: float = 1.0

    # Sync settings
    SYNC_PAGE_SIZE: int = 50
    SYNC_MAX_PAGES: int = 10
    SYNC_INTERVAL_MINUTES: int = 60
    # Accounts synced by the periodic task, as "tenant_id:user_id"
    SYNC_ACCOUNTS: List[str] = Field(default_factory=list)
    FREE_BUSY_INTERVAL_MINUTES: int = 30

    # Token handling
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300
    TOKEN_ENCRYPTION_KEY: str = ""

    # Redis settings for storage
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    # File storage fallback
    STORAGE_PATH: str = "./storage"
    HISTORY_LIMIT: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True

# Create settings instance
settings = Settings()
