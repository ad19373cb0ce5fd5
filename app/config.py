from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Durable store; when unset or unreachable the service runs in-memory
    DATABASE_URL: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    # Shared secret for the GET /webhook subscription handshake
    WEBHOOK_VERIFY_TOKEN: str = ""

    # Address of the owning business account, used as sender of outbound messages
    BUSINESS_PHONE_NUMBER_ID: str = "business"

    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:3000"]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
