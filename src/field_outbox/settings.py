from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class OutboxSettings(BaseSettings):
    BASE_URL: str = "http://localhost:8080"
    API_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SEC: float = 30.0

    LEDGER_BACKEND: Literal["sqlite", "postgres", "memory"] = "sqlite"
    LEDGER_PATH: str = "./data/outbox.db"
    DATABASE_URL: Optional[str] = None
    POOL_MAX: int = 4

    MAX_RETRIES: int = 5
    INITIAL_BACKOFF_MS: int = 5_000
    MAX_BACKOFF_MS: int = 3_600_000
    BACKOFF_MULTIPLIER: float = 2.0
    RATE_LIMIT_MULTIPLIER: float = 4.0
    JITTER: bool = True

    MAX_PENDING: int = 10_000
    HIGH_RETRY_THRESHOLD: int = 3
    FLUSH_INTERVAL_SEC: Optional[float] = 60.0
    AUTO_FLUSH: bool = True

    class Config:
        env_prefix = "FIELD_OUTBOX_"
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> OutboxSettings:
    return OutboxSettings()
