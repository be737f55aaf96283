from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel
from sqlmodel import Field, SQLModel


class JobResultStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobResult(SQLModel, table=True):
    """One outcome/progress entry for a queue job. Append-only."""

    __tablename__ = "job_results"

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    job_name: str = Field(index=True)
    status: str = Field(index=True)
    server_id: int | None = Field(default=None, index=True)
    result_json: str | None = Field(default=None)
    error: str | None = Field(default=None)
    processing_time: int = Field(default=0)  # milliseconds
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )


class JobResultRead(BaseModel):
    id: int
    job_id: str
    job_name: str
    status: str
    server_id: int | None
    result_json: str | None
    error: str | None
    processing_time: int
    created_at: datetime

    model_config = {"from_attributes": True}
