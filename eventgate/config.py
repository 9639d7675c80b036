from pydantic import AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    SERVICE_PORT: int = 8080
    MAX_EVENT_SIZE: int = 1048576  # 1 MiB
    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"
    # Relational store for event records
    DATABASE_URL: str = "sqlite:///./eventgate.db"
    # Key/value backend for aggregate counters: "memory" or "redis"
    REDIS_URL: AnyUrl | None = None
    KV_ADAPTER: Literal["memory", "redis"] = "memory"
    # Admission policy for POST /v1/events
    EVENTS_RATE_LIMIT: int = 1000
    EVENTS_RATE_WINDOW_MS: int = 60000
    RATE_LIMIT_CLEANUP_INTERVAL_S: int = 300
    # Step retry policy
    STEP_RETRY_LIMIT: int = 5
    STEP_RETRY_DELAY_MS: int = 1000
    STEP_RETRY_BACKOFF: Literal["constant", "linear", "exponential"] = "exponential"
    STEP_MAX_DELAY_MS: int = 30000
    STEP_TIMEOUT_S: float = 30.0
    # Operator-requested re-processing of stored events
    MANUAL_RETRY_LIMIT: int = 3
    INBOX_MAX_FILTERS: int = 10

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
