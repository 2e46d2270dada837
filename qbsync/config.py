"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/qbsync"

    # Application
    APP_ENV: str = "development"
    SECRET_KEY: str = "change-me-in-production"
    API_V1_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # Frontend
    FRONTEND_URL: str = "http://localhost:3000"

    # QuickBooks Integration
    QUICKBOOKS_CLIENT_ID: str = ""
    QUICKBOOKS_CLIENT_SECRET: str = ""
    QUICKBOOKS_REDIRECT_URI: str = "http://localhost:8000/api/quickbooks/callback"
    QUICKBOOKS_ENVIRONMENT: str = "sandbox"  # "sandbox" | "production"
    QUICKBOOKS_SCOPES: str = "com.intuit.quickbooks.accounting openid profile email"

    # Token lifecycle
    QUICKBOOKS_TOKEN_REFRESH_SKEW_MINUTES: int = 10
    QUICKBOOKS_STATE_MAX_AGE_MINUTES: int = 10

    # Push sync pacing
    QUICKBOOKS_SYNC_DELAY_SECONDS: float = 0.1
    QUICKBOOKS_RATE_LIMIT_RETRY_AFTER_SECONDS: int = 60
    QUICKBOOKS_MAX_BACKOFF_SECONDS: float = 120.0
    QUICKBOOKS_RUN_STALE_MINUTES: int = 60

    # Provider HTTP timeouts
    QUICKBOOKS_HTTP_TIMEOUT_SECONDS: float = 10.0
    QUICKBOOKS_HTTP_CONNECT_TIMEOUT_SECONDS: float = 5.0

    # CORS
    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        if self.APP_ENV == "development":
            return ["*"]  # Allow all origins in development
        return [self.FRONTEND_URL, "http://localhost:3000"]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True
    )


settings = Settings()
