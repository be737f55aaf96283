from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from apscheduler.triggers.cron import CronTrigger
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    data_dir: Path = Path("/app/data")
    db_url: str = "sqlite:////app/data/mediasync.db"
    qdrant_url: str = "http://qdrant:6333"
    embedding_index_max_dimensions: int = 2000  # largest vector size we index
    # UI cache invalidation hook, e.g. "http://web:3000". Empty disables it.
    revalidate_url: str = ""

    # Scheduler (cron expressions, 5 fields)
    scheduler_auto_start: bool = True
    activity_sync_interval: str = "*/5 * * * *"
    user_sync_interval: str = "*/5 * * * *"
    recent_items_sync_interval: str = "*/5 * * * *"
    people_sync_interval: str = "*/15 * * * *"
    embeddings_sync_interval: str = "*/15 * * * *"
    job_cleanup_interval: str = "*/1 * * * *"
    old_job_cleanup_interval: str = "0 3 * * *"
    full_sync_interval: str = "0 2 * * *"

    # Staleness / retention
    sync_stale_minutes: int = 30
    job_stale_minutes: int = 10
    heartbeat_interval_seconds: int = 30
    heartbeat_stale_seconds: int = 120
    job_result_retention_days: int = 10
    max_processing_time_ms: int = 3_600_000  # 1 hour cap for force-failed jobs

    # Media server HTTP
    media_request_timeout_seconds: float = 30.0
    media_items_timeout_seconds: float = 60.0

    # Periodic catalog refresh
    recent_items_limit: int = 100  # newest items pulled per library
    people_sync_max_runtime_seconds: int = 840

    # Embedding worker
    embedding_request_timeout_seconds: float = 30.0
    embedding_fetch_batch_size: int = 100
    embedding_api_batch_size: int = 20
    embedding_batch_delay_ms: int = 500
    embedding_item_delay_ms: int = 100
    embedding_max_text_length: int = 8000

    # Queue + worker pool
    worker_concurrency: int = 2
    worker_poll_interval_seconds: float = 1.0
    queue_default_retry_limit: int = 3
    queue_default_retry_delay_seconds: int = 30
    queue_default_expire_minutes: int = 15

    @field_validator(
        "activity_sync_interval",
        "user_sync_interval",
        "recent_items_sync_interval",
        "people_sync_interval",
        "embeddings_sync_interval",
        "job_cleanup_interval",
        "old_job_cleanup_interval",
        "full_sync_interval",
    )
    @classmethod
    def _check_cron(cls, value: str) -> str:
        return validate_cron(value)


def validate_cron(expression: str) -> str:
    """Return the stripped expression, or raise ValueError if it is not a crontab."""
    expression = expression.strip()
    try:
        CronTrigger.from_crontab(expression)
    except ValueError as exc:
        raise ValueError(f"Invalid cron expression {expression!r}: {exc}") from exc
    return expression


@lru_cache
def get_settings() -> Settings:
    return Settings()
