"""Backfill cast and crew for items synced without them.

Item sync leaves ``People`` out of its requests to keep pages small. This
job walks the items of movie, show and music libraries that have not had
their people fetched yet, asks the media server for them twenty ids at a
time, and stops when none are left or the runtime cap is reached. Items
whose people changed lose their embedding so it is generated again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from sqlmodel import Session, col, func, select

from mediasync.config import Settings
from mediasync.errors import (
    MediaServerError,
    MediaServerResponseError,
    MediaServerUnreachableError,
)
from mediasync.models.job import JobName
from mediasync.models.job_result import JobResultStatus
from mediasync.models.media import Item, Library
from mediasync.models.server import Server
from mediasync.services import sync_helpers
from mediasync.services.job_results import JobResultLog
from mediasync.services.media_server import MediaServerClient
from mediasync.services.sequential_sync import ClientFactory
from mediasync.utils.timeutil import iso, utcnow

logger = logging.getLogger(__name__)

LIBRARY_TYPES_WITH_PEOPLE = ("movies", "tvshows", "music")
ITEM_IDS_PER_FETCH = 20
DB_BATCH_LIMIT = 500

_CHUNK_ERRORS = (MediaServerError, MediaServerResponseError, MediaServerUnreachableError)


@dataclass
class PeopleSyncResult:
    server_id: int
    processed: int = 0
    updated: int = 0
    errors: int = 0
    remaining: int = 0
    status: str = "completed"

    def as_dict(self) -> dict:
        return {
            "serverId": self.server_id,
            "processed": self.processed,
            "updated": self.updated,
            "errors": self.errors,
            "remaining": self.remaining,
            "status": self.status,
        }


@dataclass
class _RunState:
    job_id: str
    server_name: str
    started: float
    last_heartbeat: float
    failed_ids: set[str] = field(default_factory=set)


class PeopleSyncJob:
    """Fetch missing people for one server per job run."""

    JOB_NAME = JobName.PEOPLE_SYNC.value

    def __init__(
        self,
        engine,
        result_log: JobResultLog,
        settings: Settings,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._engine = engine
        self._result_log = result_log
        self._settings = settings
        self._client_factory = client_factory or MediaServerClient.from_server

    async def run(self, job_id: str, payload: dict) -> PeopleSyncResult:
        server_id = int(payload["serverId"])
        result = PeopleSyncResult(server_id=server_id)
        now = time.monotonic()

        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            if server is None:
                logger.info(
                    "PEOPLE: server_id=%s action=skipped reason=serverNotFound", server_id
                )
                result.status = "skipped"
                self._result_log.log(
                    job_id, self.JOB_NAME, JobResultStatus.COMPLETED, result.as_dict(), 0
                )
                return result
            state = _RunState(
                job_id=job_id, server_name=server.name, started=now, last_heartbeat=now
            )
            client = self._client_factory(server)

        deadline = now + self._settings.people_sync_max_runtime_seconds
        logger.info(
            "PEOPLE: server=%s server_id=%s action=start maxRuntimeSeconds=%d",
            state.server_name, server_id, self._settings.people_sync_max_runtime_seconds,
        )
        self._result_log.log(
            job_id, self.JOB_NAME, JobResultStatus.PROCESSING,
            {"serverId": server_id, "status": "starting", "lastHeartbeat": iso(utcnow())},
            0,
        )

        try:
            while time.monotonic() < deadline:
                ids = self._pending_ids(server_id, state.failed_ids, DB_BATCH_LIMIT)
                if not ids:
                    break
                for start in range(0, len(ids), ITEM_IDS_PER_FETCH):
                    if time.monotonic() >= deadline:
                        break
                    await self._sync_chunk(
                        client, server_id, ids[start:start + ITEM_IDS_PER_FETCH], result, state
                    )
                    self._heartbeat(state, result)

            result.remaining = self._remaining(server_id)
            logger.info(
                "PEOPLE: server=%s server_id=%s action=completed processed=%d updated=%d errors=%d remaining=%d",
                state.server_name, server_id,
                result.processed, result.updated, result.errors, result.remaining,
            )
            self._result_log.log(
                job_id, self.JOB_NAME, JobResultStatus.COMPLETED,
                result.as_dict(), _elapsed_ms(state.started),
            )
            return result
        except Exception as exc:
            logger.exception(
                "PEOPLE: server=%s server_id=%s action=failed", state.server_name, server_id
            )
            result.status = "failed"
            failed = result.as_dict()
            failed["error"] = str(exc)
            self._result_log.log(
                job_id, self.JOB_NAME, JobResultStatus.FAILED,
                failed, _elapsed_ms(state.started), error=exc,
            )
            raise

    async def _sync_chunk(
        self,
        client: MediaServerClient,
        server_id: int,
        chunk: list[str],
        result: PeopleSyncResult,
        state: _RunState,
    ) -> None:
        try:
            entries = await client.get_items_people(chunk)
        except _CHUNK_ERRORS as exc:
            # Left unsynced for the next run
            result.errors += 1
            state.failed_ids.update(chunk)
            logger.warning(
                "PEOPLE: server=%s server_id=%s action=chunkFailed items=%d error=%s",
                state.server_name, server_id, len(chunk), exc,
            )
            return
        with Session(self._engine) as session:
            changed = sync_helpers.update_item_people(session, server_id, chunk, entries)
            session.commit()
        result.processed += len(chunk)
        result.updated += changed

    def _pending_query(self, server_id: int):
        return (
            select(Item.id)
            .join(Library, col(Item.library_id) == col(Library.id))
            .where(Item.server_id == server_id)
            .where(Item.people_synced == False)  # noqa: E712
            .where(col(Library.collection_type).in_(LIBRARY_TYPES_WITH_PEOPLE))
        )

    def _pending_ids(self, server_id: int, exclude: set[str], limit: int) -> list[str]:
        stmt = self._pending_query(server_id)
        if exclude:
            stmt = stmt.where(col(Item.id).notin_(list(exclude)))
        stmt = stmt.order_by(Item.id).limit(limit)
        with Session(self._engine) as session:
            return list(session.exec(stmt).all())

    def _remaining(self, server_id: int) -> int:
        stmt = select(func.count()).select_from(self._pending_query(server_id).subquery())
        with Session(self._engine) as session:
            return int(session.exec(stmt).one())

    def _heartbeat(self, state: _RunState, result: PeopleSyncResult) -> None:
        now = time.monotonic()
        if now - state.last_heartbeat <= self._settings.heartbeat_interval_seconds:
            return
        state.last_heartbeat = now
        logger.info(
            "PEOPLE: server=%s server_id=%s action=heartbeat processed=%d updated=%d errors=%d",
            state.server_name, result.server_id, result.processed, result.updated, result.errors,
        )
        payload = result.as_dict()
        payload["lastHeartbeat"] = iso(utcnow())
        self._result_log.log(
            state.job_id, self.JOB_NAME, JobResultStatus.PROCESSING,
            payload, _elapsed_ms(state.started),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
