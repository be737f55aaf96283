from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class JobName(str, Enum):
    ADD_SERVER = "add-server"
    SEQUENTIAL_SERVER_SYNC = "sequential-server-sync"
    FULL_SYNC = "media-full-sync"
    USERS_SYNC = "media-users-sync"
    ACTIVITIES_SYNC = "media-activities-sync"
    RECENT_ITEMS_SYNC = "media-recent-items-sync"
    PEOPLE_SYNC = "media-people-sync"
    GENERATE_ITEM_EMBEDDINGS = "generate-item-embeddings"
    INFER_WATCHTIME = "infer-watchtime-from-userdata"


class JobState(str, Enum):
    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# States in which a job still counts against its singleton key
OPEN_STATES: tuple[str, ...] = (
    JobState.CREATED.value,
    JobState.RETRY.value,
    JobState.ACTIVE.value,
)
TERMINAL_STATES: tuple[str, ...] = (
    JobState.COMPLETED.value,
    JobState.FAILED.value,
    JobState.CANCELLED.value,
    JobState.EXPIRED.value,
)


class BackgroundJob(SQLModel, table=True):
    __tablename__ = "background_jobs"
    __table_args__ = (
        # At most one open job per (name, singleton_key)
        Index(
            "ux_background_jobs_singleton",
            "name",
            "singleton_key",
            unique=True,
            sqlite_where=text("state IN ('created', 'retry', 'active')"),
        ),
        Index("ix_background_jobs_name_state", "name", "state"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str
    state: str = Field(default=JobState.CREATED.value)
    payload_json: str = Field(default="{}")  # JSON-serialized job payload
    output_json: str | None = Field(default=None)
    singleton_key: str | None = Field(default=None)
    server_id: int | None = Field(default=None, index=True)  # copied from payload
    retry_limit: int = Field(default=3)
    retry_count: int = Field(default=0)
    retry_delay_seconds: int = Field(default=30)
    expire_in_minutes: int = Field(default=15)
    start_after: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    error_message: str | None = Field(default=None)


class BackgroundJobRead(BaseModel):
    id: str
    name: str
    state: str
    payload_json: str
    output_json: str | None
    singleton_key: str | None
    server_id: int | None
    retry_limit: int
    retry_count: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None

    model_config = {"from_attributes": True}
