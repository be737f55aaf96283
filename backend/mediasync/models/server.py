from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel
from sqlmodel import Field, SQLModel


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncProgress(str, Enum):
    NOT_STARTED = "not_started"
    USERS = "users"
    LIBRARIES = "libraries"
    ITEMS = "items"
    ACTIVITIES = "activities"
    COMPLETED = "completed"


# Order used for progress reporting
SYNC_STEPS: list[SyncProgress] = list(SyncProgress)


class EmbeddingProvider(str, Enum):
    OPENAI_COMPATIBLE = "openai-compatible"
    OLLAMA = "ollama"

    @classmethod
    def normalize(cls, value: str | None) -> EmbeddingProvider | None:
        """Map a stored provider tag to the enum; "openai" is an alias."""
        if not value:
            return None
        if value == "openai":
            return cls.OPENAI_COMPATIBLE
        return cls(value)

    @property
    def requires_api_key(self) -> bool:
        return self is EmbeddingProvider.OPENAI_COMPATIBLE


class Server(SQLModel, table=True):
    __tablename__ = "servers"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    url: str
    api_key: str
    version: str | None = Field(default=None)
    local_address: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    sync_status: str = Field(default=SyncStatus.PENDING.value, index=True)
    sync_progress: str = Field(default=SyncProgress.NOT_STARTED.value)
    sync_error: str | None = Field(default=None)
    last_sync_started: datetime | None = Field(default=None)
    last_sync_completed: datetime | None = Field(default=None)

    embedding_provider: str | None = Field(default=None)  # "openai-compatible" | "ollama"
    embedding_base_url: str | None = Field(default=None)
    embedding_api_key: str | None = Field(default=None)
    embedding_model: str | None = Field(default=None)
    embedding_dimensions: int = Field(default=1536)
    auto_generate_embeddings: bool = Field(default=False)
    embedding_stop_requested: bool = Field(default=False)


class ServerRead(BaseModel):
    id: int
    name: str
    url: str
    version: str | None
    sync_status: str
    sync_progress: str
    sync_error: str | None
    last_sync_started: datetime | None
    last_sync_completed: datetime | None
    embedding_provider: str | None
    embedding_model: str | None
    embedding_dimensions: int
    auto_generate_embeddings: bool

    model_config = {"from_attributes": True}
