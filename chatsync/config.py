from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Shared by the server and the sync client; every value can be
    overridden per process through the environment or a .env file.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Ensure environment variables override .env file
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chatsync.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Message store limits
    MAX_PAGE_SIZE: int = 100
    DEFAULT_PAGE_SIZE: int = 50
    MAX_CONTENT_LENGTH: int = 1000

    # Poll intervals in seconds (online / offline)
    MESSAGE_POLL_INTERVAL: float = 2.0
    MESSAGE_POLL_OFFLINE_INTERVAL: float = 10.0
    CONVERSATION_POLL_INTERVAL: float = 3.0
    CONVERSATION_POLL_OFFLINE_INTERVAL: float = 15.0
    # Consecutive transient poll failures before the client is considered offline
    POLL_FAILURE_THRESHOLD: int = 3

    # Outbound send pipeline
    SEND_MAX_ATTEMPTS: int = 3
    SEND_BACKOFF_BASE: float = 1.0
    SEND_BACKOFF_CAP: float = 30.0
    REQUEST_TIMEOUT: float = 10.0

    # Local conversation cache
    CACHE_MAX_MESSAGES: int = 100

    # Realtime push channel
    REALTIME_RETRY_INTERVAL: float = 5.0
    REALTIME_QUEUE_SIZE: int = 100


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
