"""Runtime settings for the roomfix services and workers."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Cache (best-effort, disabled unless configured)
    REDIS_ENABLED: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: float = 1.0
    REDIS_MAX_CONNECT_ATTEMPTS: int = 3

    # Durable store backend (memory|redis)
    STORE_BACKEND: str = "memory"
    STORE_REDIS_URL: str = "redis://localhost:6379/1"
    KEY_PREFIX: str = "roomfix"

    # Queue / worker
    QUEUE_NAME: str = "roomfix:queue"
    WORKER_MAX_JOBS: int = 10
    WORKER_JOB_TIMEOUT_SECONDS: int = 600

    MEDIA_STORAGE_DIR: str = "data/media"

    # Metering
    DEFAULT_CREDIT_LIMIT: int = 20
    IMAGE_CREDIT_COST: int = 1
    IMAGE_FIX_CREDIT_COST: int = 1
    VIDEO_CREDIT_COST: int = 2
    VIDEO_FIX_CREDIT_COST: int = 2
    MAX_CONTENT_VIOLATIONS: int = 3

    # Fix orchestration
    MAX_CONCURRENT_FIXES: int = 3
    VIDEO_FIX_BATCH_SIZE: int = 2

    # Video pipeline
    VIDEO_FRAME_INTERVAL: float = 5.0
    VIDEO_MAX_FRAMES: int = 12
    VIDEO_MAX_PROBLEM_FRAMES: int = 6
    VIDEO_MODERATION_BATCH_SIZE: int = 4
    VIDEO_FRAME_DEDUP_THRESHOLD: float = 1.0
    VIDEO_REPRESENTATIVE_FRAMES: list[float] = [0.1, 0.5, 0.9]
    VIDEO_MAX_DURATION: float = 60.0

    # AI collaborator
    AI_SERVICE_URL: str = "http://localhost:8700"
    AI_TIMEOUT_SECONDS: float = 120.0
    AI_MAX_RETRIES: int = 2
    AI_RETRY_BASE_DELAY: float = 1.0
    AI_RETRY_MAX_DELAY: float = 30.0
    AI_RETRY_JITTER: float = 0.3

    # Cache TTLs (seconds)
    CACHE_TTL_IMAGE_HASH: int = 30 * 24 * 3600
    CACHE_TTL_FIX_RESULT: int = 7 * 24 * 3600
    CACHE_TTL_ANALYSIS: int = 24 * 3600
    CACHE_TTL_SIGNATURE: int = 2 * 3600
    CACHE_TTL_ACCOUNT: int = 300

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    global _settings_cache
    _settings_cache = None
