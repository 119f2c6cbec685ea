from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Steady Notifications"
    VERSION: str = "0.1.0"
    API_PREFIX: str = "/api"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./steady-notifications.db"
    CREATE_TABLES_ON_STARTUP: bool = True

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Notification scheduling
    DEFAULT_TIMEZONE: str = "UTC"
    NOTIFICATION_DISPATCH_TIMEOUT_SECONDS: float = 10.0
    NOTIFICATION_SCHEDULER_TICK_MINUTES: int = 15
    NOTIFICATION_SCHEDULER_LOOKAHEAD_MINUTES: int = 16

    # Community reply notifications
    COMMUNITY_REPLY_COOLDOWN_MINUTES: int = 30
    COMMUNITY_REPLY_HOURLY_LIMIT: int = 3
    COMMUNITY_REPLY_WINDOW_MINUTES: int = 60
    COMMUNITY_REPLY_DEBOUNCE_SECONDS: int = 120

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
