"""Sequential per-server sync: users -> libraries -> items -> activities.

The server row carries the state machine::

    pending -> syncing(users) -> syncing(libraries) -> syncing(items)
            -> syncing(activities) -> completed

Any failure, in a step or while recording progress, moves the server to
``failed`` and stops the run. Progress only advances after the step's upsert
has committed. Nothing here prevents two runs for the same server from
overlapping; the scheduler's staleness filter and the queue's singleton keys
are the only guards.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlmodel import Session, select

from mediasync.errors import (
    MediaServerError,
    MediaServerResponseError,
    MediaServerUnreachableError,
)
from mediasync.models.job_result import JobResultStatus
from mediasync.models.media import Library
from mediasync.models.server import Server, SyncProgress, SyncStatus
from mediasync.services import sync_helpers
from mediasync.services.job_results import JobResultLog
from mediasync.services.media_server import MediaServerClient
from mediasync.utils.timeutil import iso, utcnow

logger = logging.getLogger(__name__)

ACTIVITY_PAGE_SIZE = 500


class SyncPipelineError(Exception):
    """A sync step failed; the message is what was stored in ``sync_error``."""


class _StepFailed(Exception):
    pass


@dataclass
class SyncRunResult:
    server_id: int
    status: str = "completed"  # completed | failed | skipped
    users: int = 0
    libraries: int = 0
    items: int = 0
    activities: int = 0
    error: str | None = None
    library_item_counts: dict[str, int] = field(default_factory=dict)
    library_errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["serverId"] = data.pop("server_id")
        return data


ClientFactory = Callable[[Server], MediaServerClient]


class SequentialSyncPipeline:
    """Drive one server through the ordered sync steps."""

    JOB_NAME = "sequential-server-sync"

    def __init__(
        self,
        engine,
        result_log: JobResultLog,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._engine = engine
        self._result_log = result_log
        self._client_factory = client_factory or MediaServerClient.from_server

    # ── Full pipeline ────────────────────────────────────────────────

    async def run(
        self, job_id: str, server_id: int, job_name: str | None = None
    ) -> SyncRunResult:
        job_name = job_name or self.JOB_NAME
        started = time.monotonic()
        result = SyncRunResult(server_id=server_id)

        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            if server is None:
                logger.info(
                    "SYNC: server_id=%s action=skipped reason=serverNotFound", server_id
                )
                result.status = "skipped"
                self._result_log.log(
                    job_id, job_name, JobResultStatus.COMPLETED,
                    result.as_dict(), _elapsed_ms(started),
                )
                return result

            server_name = server.name
            client = self._client_factory(server)
            now = utcnow()
            server.sync_status = SyncStatus.SYNCING.value
            server.sync_progress = SyncProgress.USERS.value
            server.last_sync_started = now
            server.sync_error = None
            server.updated_at = now
            session.add(server)
            session.commit()

        logger.info("SYNC: server=%s server_id=%s action=start", server_name, server_id)
        self._result_log.log(
            job_id, job_name, JobResultStatus.PROCESSING,
            {"serverId": server_id, "status": "starting", "lastHeartbeat": iso(now)},
            0,
        )

        libraries: list[dict] = []

        async def users_step() -> None:
            users = await self._fetch(client.get_users())
            result.users = self._store(sync_helpers.upsert_users, server_id, users)

        async def libraries_step() -> None:
            folders = await self._fetch(client.get_libraries())
            libraries.extend(f for f in folders if f.get("ItemId"))
            result.libraries = self._store(sync_helpers.upsert_libraries, server_id, folders)

        async def items_step() -> None:
            for folder in libraries:
                library_id = folder["ItemId"]
                items = await self._fetch(client.get_library_items(library_id))
                count = self._store(sync_helpers.upsert_items, server_id, library_id, items)
                result.library_item_counts[library_id] = count
                result.items += count

        async def activities_step() -> None:
            start_index = 0
            while True:
                page = await self._fetch(
                    client.get_activity_log(limit=ACTIVITY_PAGE_SIZE, start_index=start_index)
                )
                result.activities += self._store(
                    sync_helpers.upsert_activities, server_id, page
                )
                if len(page) < ACTIVITY_PAGE_SIZE:
                    break
                start_index += len(page)

        steps: list[tuple[SyncProgress, Callable[[], Awaitable[None]]]] = [
            (SyncProgress.USERS, users_step),
            (SyncProgress.LIBRARIES, libraries_step),
            (SyncProgress.ITEMS, items_step),
            (SyncProgress.ACTIVITIES, activities_step),
        ]
        order = list(SyncProgress)

        try:
            for step, runner in steps:
                await runner()
                next_step = order[order.index(step) + 1]
                if next_step is SyncProgress.COMPLETED:
                    break
                self._set_progress(server_id, next_step)
                logger.info(
                    "SYNC: server=%s server_id=%s action=stepCompleted step=%s",
                    server_name, server_id, step.value,
                )
                self._result_log.log(
                    job_id, job_name, JobResultStatus.PROCESSING,
                    {
                        "serverId": server_id,
                        "step": next_step.value,
                        "lastHeartbeat": iso(utcnow()),
                    },
                    _elapsed_ms(started),
                )
            self._mark_completed(server_id)
        except Exception as exc:
            message = _failure_message(exc)
            result.status = "failed"
            result.error = message
            self._mark_failed(server_id, message)
            logger.error(
                "SYNC: server=%s server_id=%s action=failed error=%s",
                server_name, server_id, message,
                exc_info=not isinstance(exc, _StepFailed),
            )
            self._result_log.log(
                job_id, job_name, JobResultStatus.FAILED,
                result.as_dict(), _elapsed_ms(started), error=message,
            )
            raise SyncPipelineError(message) from exc

        logger.info(
            "SYNC: server=%s server_id=%s action=completed users=%d libraries=%d items=%d activities=%d",
            server_name, server_id, result.users, result.libraries, result.items, result.activities,
        )
        self._result_log.log(
            job_id, job_name, JobResultStatus.COMPLETED,
            result.as_dict(), _elapsed_ms(started),
        )
        return result

    # ── Single-step runs (periodic user/activity families) ───────────

    async def sync_users_only(self, job_id: str, server_id: int, job_name: str) -> SyncRunResult:
        """Refresh users without touching the server's sync state."""

        async def step(client: MediaServerClient, result: SyncRunResult) -> None:
            users = await self._fetch(client.get_users())
            result.users = self._store(sync_helpers.upsert_users, server_id, users)

        return await self._single_step(job_id, server_id, job_name, step)

    async def sync_activities_only(
        self, job_id: str, server_id: int, job_name: str, limit: int = 100
    ) -> SyncRunResult:
        """Pull the newest ``limit`` activity log entries."""

        async def step(client: MediaServerClient, result: SyncRunResult) -> None:
            entries = await self._fetch(client.get_activity_log(limit=limit))
            result.activities = self._store(sync_helpers.upsert_activities, server_id, entries)

        return await self._single_step(job_id, server_id, job_name, step)

    async def sync_recent_items_only(
        self, job_id: str, server_id: int, job_name: str, limit: int = 100
    ) -> SyncRunResult:
        """Upsert the newest ``limit`` items of every known library.

        Only libraries already stored for the server and still present on the
        media server are visited. A library that fails to list is recorded in
        ``library_errors`` and the rest still run.
        """

        async def step(client: MediaServerClient, result: SyncRunResult) -> None:
            folders = await self._fetch(client.get_libraries())
            live_ids = {f.get("ItemId") for f in folders if isinstance(f, dict)}
            with Session(self._engine) as session:
                known = [
                    (library.id, library.name)
                    for library in session.exec(
                        select(Library).where(Library.server_id == server_id).order_by(Library.id)
                    ).all()
                    if library.id in live_ids
                ]
            result.libraries = len(known)
            for library_id, library_name in known:
                try:
                    items = await self._fetch(client.get_recent_items(library_id, limit))
                except _StepFailed as exc:
                    logger.warning(
                        "%s: server_id=%s library=%s action=libraryFailed error=%s",
                        job_name, server_id, library_name, exc,
                    )
                    result.library_errors.append(f"Library {library_name}: {exc}")
                    continue
                count = self._store(sync_helpers.upsert_items, server_id, library_id, items)
                result.library_item_counts[library_id] = count
                result.items += count

        return await self._single_step(job_id, server_id, job_name, step)

    async def _single_step(self, job_id, server_id, job_name, step) -> SyncRunResult:
        started = time.monotonic()
        result = SyncRunResult(server_id=server_id)
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            if server is None:
                result.status = "skipped"
                self._result_log.log(
                    job_id, job_name, JobResultStatus.COMPLETED,
                    result.as_dict(), _elapsed_ms(started),
                )
                return result
            client = self._client_factory(server)

        try:
            await step(client, result)
        except Exception as exc:
            message = _failure_message(exc)
            result.status = "failed"
            result.error = message
            logger.warning(
                "%s: server_id=%s action=failed error=%s", job_name, server_id, message,
                exc_info=not isinstance(exc, _StepFailed),
            )
            self._result_log.log(
                job_id, job_name, JobResultStatus.FAILED,
                result.as_dict(), _elapsed_ms(started), error=message,
            )
            raise SyncPipelineError(message) from exc

        self._result_log.log(
            job_id, job_name, JobResultStatus.COMPLETED,
            result.as_dict(), _elapsed_ms(started),
        )
        return result

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    async def _fetch(awaitable):
        try:
            return await awaitable
        except (
            MediaServerError,
            MediaServerResponseError,
            MediaServerUnreachableError,
        ) as exc:
            raise _StepFailed(str(exc)) from exc
        except ValueError as exc:
            # Body was not valid JSON
            raise _StepFailed(f"API error: invalid response ({exc})") from exc

    def _store(self, upsert, *args) -> int:
        try:
            with Session(self._engine) as session:
                count = upsert(session, *args)
                session.commit()
                return count
        except Exception as exc:
            raise _StepFailed(f"Database error: {exc}") from exc

    def _set_progress(self, server_id: int, progress: SyncProgress) -> None:
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            if server is None:
                return
            server.sync_progress = progress.value
            server.updated_at = utcnow()
            session.add(server)
            session.commit()

    def _mark_failed(self, server_id: int, message: str) -> None:
        try:
            with Session(self._engine) as session:
                server = session.get(Server, server_id)
                if server is None:
                    return
                server.sync_status = SyncStatus.FAILED.value
                server.sync_error = message
                server.updated_at = utcnow()
                session.add(server)
                session.commit()
        except Exception:
            # The reconciler fails the stuck server later
            logger.exception("SYNC: server_id=%s action=markFailed failed", server_id)

    def _mark_completed(self, server_id: int) -> None:
        now = utcnow()
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            if server is None:
                return
            server.sync_status = SyncStatus.COMPLETED.value
            server.sync_progress = SyncProgress.COMPLETED.value
            server.last_sync_completed = now
            server.sync_error = None
            server.updated_at = now
            session.add(server)
            session.commit()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _failure_message(exc: Exception) -> str:
    """Text stored in ``sync_error`` and the failed result row."""
    if isinstance(exc, _StepFailed):
        return str(exc)
    return f"Unexpected error: {type(exc).__name__}: {exc}"
