from __future__ import annotations

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel

# Item types that get embeddings
EMBEDDABLE_ITEM_TYPES: tuple[str, ...] = ("Movie", "Series")


class MediaUser(SQLModel, table=True):
    __tablename__ = "media_users"

    id: str = Field(primary_key=True)  # media server user id
    server_id: int = Field(foreign_key="servers.id", index=True)
    name: str
    is_administrator: bool = Field(default=False)
    is_disabled: bool = Field(default=False)
    last_login_date: datetime | None = Field(default=None)
    last_activity_date: datetime | None = Field(default=None)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Library(SQLModel, table=True):
    __tablename__ = "libraries"

    id: str = Field(primary_key=True)  # VirtualFolder ItemId
    server_id: int = Field(foreign_key="servers.id", index=True)
    name: str
    collection_type: str | None = Field(default=None)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Item(SQLModel, table=True):
    __tablename__ = "items"

    id: str = Field(primary_key=True)
    server_id: int = Field(foreign_key="servers.id", index=True)
    library_id: str | None = Field(default=None, foreign_key="libraries.id")
    name: str = Field(default="")
    type: str | None = Field(default=None, index=True)
    original_title: str | None = Field(default=None)
    series_name: str | None = Field(default=None)
    series_id: str | None = Field(default=None)
    season_id: str | None = Field(default=None)
    overview: str | None = Field(default=None)
    genres_json: str | None = Field(default=None)  # JSON list of strings
    tags_json: str | None = Field(default=None)  # JSON list of strings
    production_year: int | None = Field(default=None)
    premiere_date: datetime | None = Field(default=None)
    official_rating: str | None = Field(default=None)
    community_rating: float | None = Field(default=None)
    series_studio: str | None = Field(default=None)
    runtime_ticks: int | None = Field(default=None)
    people_json: str | None = Field(default=None)  # JSON list of {Name, Role, Type}
    people_synced: bool = Field(default=False, index=True)
    embedding_json: str | None = Field(default=None)  # JSON list of floats
    processed: bool = Field(default=False, index=True)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Activity(SQLModel, table=True):
    __tablename__ = "activities"

    id: str = Field(primary_key=True)
    server_id: int = Field(foreign_key="servers.id", index=True)
    name: str = Field(default="")
    short_overview: str | None = Field(default=None)
    type: str | None = Field(default=None)
    date: datetime | None = Field(default=None, index=True)
    user_id: str | None = Field(default=None)
    item_id: str | None = Field(default=None)
    severity: str | None = Field(default=None)


class PlaybackSession(SQLModel, table=True):
    __tablename__ = "playback_sessions"

    id: str = Field(primary_key=True)
    server_id: int = Field(foreign_key="servers.id", index=True)
    user_id: str = Field(index=True)
    item_id: str = Field(index=True)
    user_name: str | None = Field(default=None)
    item_name: str | None = Field(default=None)
    series_id: str | None = Field(default=None)
    series_name: str | None = Field(default=None)
    season_id: str | None = Field(default=None)
    play_duration: int = Field(default=0)  # seconds
    start_time: datetime | None = Field(default=None, index=True)
    end_time: datetime | None = Field(default=None)
    runtime_ticks: int | None = Field(default=None)
    position_ticks: int | None = Field(default=None)
    percent_complete: float = Field(default=0.0)
    completed: bool = Field(default=False)
    is_inferred: bool = Field(default=False)
    raw_data_json: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
