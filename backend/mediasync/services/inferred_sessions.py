"""Backfill playback sessions from the media server's "played" user data.

Servers remember that a user finished an item (``UserData.Played`` and
``LastPlayedDate``) even when no playback was ever recorded here. For those
items a completed session with full watch time is inserted, keyed
deterministically so re-running the job never duplicates rows.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from mediasync.models.job import JobName
from mediasync.models.job_result import JobResultStatus
from mediasync.models.media import Item, MediaUser, PlaybackSession
from mediasync.models.server import Server
from mediasync.services.job_results import JobResultLog
from mediasync.services.media_server import MediaServerClient
from mediasync.utils.timeutil import iso, parse_iso, utcnow

logger = logging.getLogger(__name__)

JOB_NAME = JobName.INFER_WATCHTIME.value
NEARBY_WINDOW = timedelta(hours=24)
TICKS_PER_SECOND = 10_000_000


class InferWatchtimeError(Exception):
    """The job request itself is invalid (unknown server/user, not allowed)."""


def infer_session_id(server_id: int, user_id: str, item_id: str, last_played: datetime) -> str:
    return f"inferred:{server_id}:{user_id}:{item_id}:{iso(last_played)}"


@dataclass
class InferWatchtimeResult:
    server_id: int
    user_id: str | None = None
    processed: int = 0
    skipped: int = 0
    created: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "serverId": self.server_id,
            "userId": self.user_id,
            "processed": self.processed,
            "skipped": self.skipped,
            "created": self.created,
            "errors": self.errors,
        }


class InferWatchtimeJob:
    def __init__(self, engine, result_log: JobResultLog, client_factory=None) -> None:
        self._engine = engine
        self._result_log = result_log
        self._client_factory = client_factory or MediaServerClient.from_server

    async def run(self, job_id: str, payload: dict) -> InferWatchtimeResult:
        started = time.monotonic()
        server_id = int(payload["serverId"])
        user_id = payload.get("userId") or None
        result = InferWatchtimeResult(server_id=server_id, user_id=user_id)

        try:
            logger.info(
                "%s: action=start server_id=%s user=%s", JOB_NAME, server_id, user_id or "all"
            )
            client, users = self._resolve(
                server_id,
                user_id,
                triggered_by=payload.get("triggeredBy"),
                is_admin=bool(payload.get("isAdmin", False)),
            )
            for uid, uname in users:
                try:
                    played = await client.get_user_played_items(uid)
                    logger.info(
                        "%s: action=foundPlayedItems user=%s count=%d", JOB_NAME, uname, len(played)
                    )
                    for entry in played:
                        self._infer_one(server_id, uid, uname, entry, result)
                except Exception as exc:
                    logger.warning("%s: action=userError user=%s error=%s", JOB_NAME, uname, exc)
                    result.errors += 1
        except Exception as exc:
            self._result_log.log(
                job_id, JOB_NAME, JobResultStatus.FAILED,
                result.as_dict(), _elapsed_ms(started), error=exc,
            )
            raise

        self._result_log.log(
            job_id, JOB_NAME, JobResultStatus.COMPLETED, result.as_dict(), _elapsed_ms(started)
        )
        logger.info(
            "%s: action=completed server_id=%s processed=%d created=%d skipped=%d errors=%d",
            JOB_NAME, server_id, result.processed, result.created, result.skipped, result.errors,
        )
        return result

    def _resolve(self, server_id, user_id, triggered_by, is_admin):
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            if server is None:
                raise InferWatchtimeError(f"Server with ID {server_id} not found")
            client = self._client_factory(server)

            if user_id:
                user = session.get(MediaUser, user_id)
                if user is None or user.server_id != server_id:
                    raise InferWatchtimeError(f"User {user_id} not found on server {server_id}")
                if not is_admin and triggered_by != user_id:
                    raise InferWatchtimeError("Non-admins can only infer watchtime for themselves")
                return client, [(user.id, user.name)]

            if not is_admin:
                raise InferWatchtimeError("Only admins can trigger inference for all users")
            users = session.exec(
                select(MediaUser).where(MediaUser.server_id == server_id).order_by(MediaUser.name)
            ).all()
            return client, [(u.id, u.name) for u in users]

    def _infer_one(self, server_id, user_id, user_name, entry: dict, result) -> None:
        result.processed += 1
        user_data = entry.get("UserData") or {}
        item_id = entry.get("Id")
        if not user_data.get("Played") or not item_id:
            result.skipped += 1
            return
        last_played = parse_iso(user_data.get("LastPlayedDate"))
        if last_played is None:
            result.skipped += 1
            return

        session_id = infer_session_id(server_id, user_id, item_id, last_played)
        with Session(self._engine) as session:
            if self._has_existing(session, session_id, server_id, user_id, item_id, last_played):
                result.skipped += 1
                return
            item = session.get(Item, item_id)
            if item is None:
                result.skipped += 1
                return

            runtime_ticks = entry.get("RunTimeTicks") or item.runtime_ticks or 0
            session.add(PlaybackSession(
                id=session_id,
                server_id=server_id,
                user_id=user_id,
                item_id=item_id,
                user_name=user_name,
                item_name=entry.get("Name") or item.name,
                series_id=entry.get("SeriesId"),
                series_name=entry.get("SeriesName"),
                season_id=entry.get("SeasonId"),
                play_duration=runtime_ticks // TICKS_PER_SECOND,
                start_time=last_played,
                end_time=last_played,
                runtime_ticks=runtime_ticks,
                position_ticks=runtime_ticks,
                percent_complete=100.0,
                completed=True,
                is_inferred=True,
                raw_data_json=json.dumps({
                    "source": "inferred-from-userdata",
                    "inferredAt": iso(utcnow()),
                    "originalPlayCount": user_data.get("PlayCount") or 1,
                }),
            ))
            try:
                session.commit()
            except IntegrityError:
                # Concurrent run inserted the same id first
                session.rollback()
                result.skipped += 1
                return
        result.created += 1

    @staticmethod
    def _has_existing(session, session_id, server_id, user_id, item_id, last_played) -> bool:
        if session.get(PlaybackSession, session_id) is not None:
            return True
        nearby = session.exec(
            select(PlaybackSession.id)
            .where(PlaybackSession.server_id == server_id)
            .where(PlaybackSession.user_id == user_id)
            .where(PlaybackSession.item_id == item_id)
            .where(PlaybackSession.start_time >= last_played - NEARBY_WINDOW)
            .where(PlaybackSession.start_time <= last_played + NEARBY_WINDOW)
        ).first()
        return nearby is not None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
