from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Empty variables fall back to defaults instead of overriding them
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Webhook Security - required from .env
    WEBHOOK_SECRET: str
    WEBHOOK_VERIFY_TOKEN: str = ""

    # Recipient used for ingested messages when the payload carries no
    # metadata.display_phone_number
    BUSINESS_PHONE_NUMBER: str = ""

    # Delivery rules
    # Sends older than the window cannot be deleted for everyone
    DELETE_FOR_EVERYONE_WINDOW_SECONDS: int = 7 * 60
    # Bound on each store call made by the delivery coordinator
    STORE_TIMEOUT_SECONDS: float = 5.0
    DEFAULT_PAGE_SIZE: int = 50

    # Batch import
    PAYLOADS_DIR: str = "payloads"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
