"""Background job processor.

A small pool of daemon threads claims jobs from the durable queue and runs
the handler registered for the job's name. Handlers are coroutines; each
attempt gets a fresh event loop on the worker thread, so a long embedding
run never blocks the API's loop. Success stores the handler's return value
as the job output; an exception counts as a failed attempt and the queue
decides whether to retry.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import threading
from collections.abc import Awaitable, Callable

from mediasync.config import Settings
from mediasync.models.job import BackgroundJob, JobName
from mediasync.services.embedding_worker import EmbeddingWorker
from mediasync.services.inferred_sessions import InferWatchtimeJob
from mediasync.services.job_queue import JobQueue
from mediasync.services.people_sync import PeopleSyncJob
from mediasync.services.sequential_sync import SequentialSyncPipeline
from mediasync.services.servers import AddServerJob

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict], Awaitable[object]]


def _as_output(value) -> dict | None:
    if value is None:
        return None
    if hasattr(value, "as_dict"):
        return value.as_dict()
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    return value if isinstance(value, dict) else {"result": value}


class BackgroundWorker:
    """Runs queued jobs on ``worker_concurrency`` daemon threads."""

    __slots__ = ("_queue", "_handlers", "_settings", "_threads", "_stop_event")

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, Handler],
        settings: Settings,
    ) -> None:
        self._queue = queue
        self._handlers = handlers
        self._settings = settings
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._run, name=f"mediasync-worker-{i}", daemon=True)
            for i in range(max(1, self._settings.worker_concurrency))
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Background worker started with %d thread(s)", len(self._threads))

    def stop(self) -> None:
        """Signal the threads to stop and wait briefly for them."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=10)
        self._threads = []
        logger.info("Background worker stopped")

    def _run(self) -> None:
        logger.info("Worker thread running")
        poll = self._settings.worker_poll_interval_seconds
        while not self._stop_event.is_set():
            try:
                job = self._queue.fetch_next(self._handlers.keys())
            except Exception:
                logger.exception("Error claiming next job")
                self._stop_event.wait(poll)
                continue
            if job is None:
                self._stop_event.wait(poll)
                continue
            self.process(job)
        logger.info("Worker thread exiting")

    def process(self, job: BackgroundJob) -> bool:
        """Run one claimed job to completion. Returns True on success."""
        handler = self._handlers.get(job.name)
        if handler is None:
            self._queue.fail(job.id, f"No handler registered for {job.name}")
            return False

        try:
            payload = json.loads(job.payload_json or "{}")
        except ValueError as exc:
            self._queue.fail(job.id, f"Invalid payload: {exc}")
            return False

        logger.info("Job started: %s (id=%s)", job.name, job.id)
        loop = asyncio.new_event_loop()
        try:
            result = loop.run_until_complete(handler(job.id, payload))
        except Exception as exc:
            logger.exception("Job failed: %s (id=%s)", job.name, job.id)
            state = self._queue.fail(job.id, str(exc) or type(exc).__name__)
            logger.info("Job %s (id=%s) is now %s", job.name, job.id, state)
            return False
        finally:
            loop.close()

        if not self._queue.complete(job.id, _as_output(result)):
            logger.info(
                "Job %s (id=%s) finished but was no longer active (cancelled or expired)",
                job.name, job.id,
            )
        else:
            logger.info("Job completed: %s (id=%s)", job.name, job.id)
        return True


def build_handlers(
    pipeline: SequentialSyncPipeline,
    embedding_worker: EmbeddingWorker,
    add_server: AddServerJob,
    infer_watchtime: InferWatchtimeJob,
    people_sync: PeopleSyncJob,
) -> dict[str, Handler]:
    """Map every job name to the coroutine that executes it."""

    async def sequential_sync(job_id: str, payload: dict):
        return await pipeline.run(
            job_id, int(payload["serverId"]), JobName.SEQUENTIAL_SERVER_SYNC.value
        )

    async def full_sync(job_id: str, payload: dict):
        return await pipeline.run(job_id, int(payload["serverId"]), JobName.FULL_SYNC.value)

    async def users_sync(job_id: str, payload: dict):
        return await pipeline.sync_users_only(
            job_id, int(payload["serverId"]), JobName.USERS_SYNC.value
        )

    async def activities_sync(job_id: str, payload: dict):
        options = (payload.get("options") or {}).get("activityOptions") or {}
        return await pipeline.sync_activities_only(
            job_id,
            int(payload["serverId"]),
            JobName.ACTIVITIES_SYNC.value,
            limit=int(options.get("limit") or 100),
        )

    async def recent_items_sync(job_id: str, payload: dict):
        options = (payload.get("options") or {}).get("itemOptions") or {}
        return await pipeline.sync_recent_items_only(
            job_id,
            int(payload["serverId"]),
            JobName.RECENT_ITEMS_SYNC.value,
            limit=int(options.get("recentItemsLimit") or 100),
        )

    return {
        JobName.ADD_SERVER.value: add_server.run,
        JobName.SEQUENTIAL_SERVER_SYNC.value: sequential_sync,
        JobName.FULL_SYNC.value: full_sync,
        JobName.USERS_SYNC.value: users_sync,
        JobName.ACTIVITIES_SYNC.value: activities_sync,
        JobName.RECENT_ITEMS_SYNC.value: recent_items_sync,
        JobName.PEOPLE_SYNC.value: people_sync.run,
        JobName.GENERATE_ITEM_EMBEDDINGS.value: embedding_worker.run,
        JobName.INFER_WATCHTIME.value: infer_watchtime.run,
    }
