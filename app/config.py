from functools import lru_cache
from typing import List

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

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Shared secret of the identity provider that signs session tokens
    SESSION_SECRET: str

    # Chat behaviour
    EDIT_TIME_LIMIT_SECONDS: int = 120
    MAX_MESSAGE_LENGTH: int = 4096
    TYPING_TTL_SECONDS: float = 2.0
    TYPING_DISPLAY_SECONDS: float = 3.0

    # Web Push (VAPID); push is skipped when keys are empty
    VAPID_PUBLIC_KEY: str = ""
    VAPID_PRIVATE_KEY: str = ""
    VAPID_EMAIL: str = "mailto:support@campus-marketplace.app"
    PUSH_TTL_SECONDS: int = 3600

    APP_BASE_URL: str = "http://localhost:3000"

    # Users allowed to moderate reports (JSON list in env)
    ADMIN_USER_IDS: List[str] = []


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
