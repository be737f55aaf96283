"""Idempotent upserts for data pulled from the media server.

Each helper keys rows by the media server's own id, so re-running a sync
rewrites the same rows instead of duplicating them. Entries without an id
are skipped. Callers own the transaction: helpers flush but never commit.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlmodel import Session, SQLModel

from mediasync.models.media import Activity, Item, Library, MediaUser
from mediasync.utils.timeutil import parse_iso

logger = logging.getLogger(__name__)


def _upsert(session: Session, model: type[SQLModel], row_id: str, values: dict) -> None:
    existing = session.get(model, row_id)
    if existing is None:
        session.add(model(id=row_id, **values))
        return
    for key, value in values.items():
        setattr(existing, key, value)
    session.add(existing)


def _json_list(value) -> str | None:
    if not value:
        return None
    return json.dumps(list(value))


def upsert_users(session: Session, server_id: int, users: list[dict]) -> int:
    written = 0
    now = datetime.now(timezone.utc)
    for user in users:
        user_id = user.get("Id")
        if not user_id:
            continue
        policy = user.get("Policy") or {}
        _upsert(session, MediaUser, user_id, {
            "server_id": server_id,
            "name": user.get("Name") or "",
            "is_administrator": bool(policy.get("IsAdministrator", False)),
            "is_disabled": bool(policy.get("IsDisabled", False)),
            "last_login_date": parse_iso(user.get("LastLoginDate")),
            "last_activity_date": parse_iso(user.get("LastActivityDate")),
            "updated_at": now,
        })
        written += 1
    session.flush()
    return written


def upsert_libraries(session: Session, server_id: int, folders: list[dict]) -> int:
    written = 0
    now = datetime.now(timezone.utc)
    for folder in folders:
        library_id = folder.get("ItemId")
        if not library_id:
            continue
        _upsert(session, Library, library_id, {
            "server_id": server_id,
            "name": folder.get("Name") or "",
            "collection_type": folder.get("CollectionType"),
            "updated_at": now,
        })
        written += 1
    session.flush()
    return written


def _people(raw_people) -> list[dict]:
    return [
        {"Name": p.get("Name"), "Role": p.get("Role"), "Type": p.get("Type")}
        for p in raw_people or []
        if isinstance(p, dict) and p.get("Name")
    ]


def _people_json(raw_people) -> str | None:
    people = _people(raw_people)
    return json.dumps(people) if people else None


def upsert_items(
    session: Session, server_id: int, library_id: str, items: list[dict]
) -> int:
    """Upsert catalog items.

    The ``processed`` flag and stored embedding are left alone for existing
    rows unless the text the embedding was built from has changed. People
    are only written when the payload carries a ``People`` field; item sync
    does not request it and the people backfill fills it in later.
    """
    written = 0
    now = datetime.now(timezone.utc)
    for raw in items:
        item_id = raw.get("Id")
        if not item_id:
            continue
        values = {
            "server_id": server_id,
            "library_id": library_id,
            "name": raw.get("Name") or "",
            "type": raw.get("Type"),
            "original_title": raw.get("OriginalTitle"),
            "series_name": raw.get("SeriesName"),
            "series_id": raw.get("SeriesId"),
            "season_id": raw.get("SeasonId"),
            "overview": raw.get("Overview"),
            "genres_json": _json_list(raw.get("Genres")),
            "tags_json": _json_list(raw.get("Tags")),
            "production_year": raw.get("ProductionYear"),
            "premiere_date": parse_iso(raw.get("PremiereDate")),
            "official_rating": raw.get("OfficialRating"),
            "community_rating": raw.get("CommunityRating"),
            "series_studio": raw.get("SeriesStudio"),
            "runtime_ticks": raw.get("RunTimeTicks"),
            "updated_at": now,
        }
        if "People" in raw:
            values["people_json"] = _people_json(raw.get("People"))
            values["people_synced"] = True
        existing = session.get(Item, item_id)
        if existing is not None and existing.processed and (
            existing.name != values["name"]
            or existing.overview != values["overview"]
            or existing.people_json != values.get("people_json", existing.people_json)
        ):
            values["processed"] = False
            values["embedding_json"] = None
        _upsert(session, Item, item_id, values)
        written += 1
    session.flush()
    return written


def update_item_people(
    session: Session, server_id: int, item_ids: list[str], entries: list[dict]
) -> int:
    """Store fetched people for ``item_ids`` and mark them people-synced.

    Ids missing from ``entries`` are marked too, with no people, so the
    backfill does not ask for them again. Returns how many items changed;
    a changed item loses its embedding so it is generated again.
    """
    by_id = {e.get("Id"): e for e in entries if isinstance(e, dict)}
    changed = 0
    now = datetime.now(timezone.utc)
    for item_id in item_ids:
        item = session.get(Item, item_id)
        if item is None or item.server_id != server_id:
            continue
        people_json = _people_json((by_id.get(item_id) or {}).get("People"))
        if people_json != item.people_json:
            item.people_json = people_json
            if item.processed:
                item.processed = False
                item.embedding_json = None
            changed += 1
        item.people_synced = True
        item.updated_at = now
        session.add(item)
    session.flush()
    return changed


def upsert_activities(session: Session, server_id: int, entries: list[dict]) -> int:
    written = 0
    for entry in entries:
        activity_id = entry.get("Id")
        if activity_id is None or activity_id == "":
            continue
        _upsert(session, Activity, str(activity_id), {
            "server_id": server_id,
            "name": entry.get("Name") or "",
            "short_overview": entry.get("ShortOverview"),
            "type": entry.get("Type"),
            "date": parse_iso(entry.get("Date")),
            "user_id": entry.get("UserId") or None,
            "item_id": entry.get("ItemId") or None,
            "severity": entry.get("Severity"),
        })
        written += 1
    session.flush()
    return written
