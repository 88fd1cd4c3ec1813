"""Environment configuration for the sync engine."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ARENA_RT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Push channel
    WS_BASE_URL: str = "ws://localhost:5000"
    HEARTBEAT_SECONDS: float = 30.0
    CONNECT_TIMEOUT_SECONDS: float = 10.0

    # Reconnect backoff: 1s -> 2s -> 4s ... capped
    BACKOFF_BASE_SECONDS: float = 1.0
    BACKOFF_CAP_SECONDS: float = 30.0
    BACKOFF_JITTER: float = 0.2

    # REST collaborator
    API_BASE_URL: str = "http://localhost:5000/api"
    API_TIMEOUT_SECONDS: float = 10.0

    # Notification dedup
    DEDUP_MAX_SIZE: int = 1024
    DEDUP_TTL_SECONDS: float = 600.0
    NOTIFICATION_BUCKET_SECONDS: int = 60

    # Timer
    TICK_INTERVAL_SECONDS: float = 1.0
    ENDING_SOON_THRESHOLD_SECONDS: int = 300


settings = Settings()
