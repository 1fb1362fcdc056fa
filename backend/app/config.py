from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./dev.db"
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    FRONTEND_ORIGINS: List[str] = ["http://localhost:3000"]
    SESSION_COOKIE_NAME: str = "shop_session"
    LOG_LEVEL: str = "INFO"

    # age gate
    VERIFICATION_EXPIRY_HOURS: int = 24
    MINIMUM_AGE: int = 18
    VERIFICATION_POLL_INTERVAL_SECONDS: float = 2.0
    VERIFICATION_POLL_MAX_ATTEMPTS: int = 30
    PENDING_VERIFICATION_TTL_SECONDS: int = 1800

    # identity gateway: "mock" or "klarna"
    IDENTITY_GATEWAY: str = "mock"
    IDENTITY_GATEWAY_TIMEOUT_SECONDS: float = 30.0
    KLARNA_CLIENT_ID: Optional[str] = None
    KLARNA_CLIENT_SECRET: Optional[str] = None
    KLARNA_ENVIRONMENT: str = "sandbox"
    KLARNA_BASE_URL: str = "https://api-global.test.klarna.com"
    KLARNA_ACCOUNT_ID: Optional[str] = None
    KLARNA_AUTH_SCHEME: str = "basic"  # basic | bearer
    KLARNA_IDENTITY_REQUEST_PATH: str = "/v2/accounts/{account_id}/identity/requests"
    KLARNA_RETURN_URL: str = "http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
