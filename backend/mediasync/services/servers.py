"""Registering a media server: validate credentials, store it, queue its first sync."""

from __future__ import annotations

import logging
import time

from sqlmodel import Session

from mediasync.errors import (
    MediaServerError,
    MediaServerResponseError,
    MediaServerUnreachableError,
)
from mediasync.models.job import JobName
from mediasync.models.job_result import JobResultStatus
from mediasync.models.server import Server
from mediasync.services.job_queue import JobQueue
from mediasync.services.job_results import JobResultLog
from mediasync.services.media_server import MediaServerClient

logger = logging.getLogger(__name__)

JOB_NAME = JobName.ADD_SERVER.value

# Policy for the sync queued right after a server is added
INITIAL_SYNC_OPTIONS = {"expire_in_minutes": 360, "retry_limit": 1, "retry_delay_seconds": 300}


class AddServerError(Exception):
    """Connection test failed; the message is safe to show to the operator."""


class AddServerJob:
    def __init__(
        self,
        engine,
        queue: JobQueue,
        result_log: JobResultLog,
        client_cls: type[MediaServerClient] = MediaServerClient,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._result_log = result_log
        self._client_cls = client_cls

    async def run(self, job_id: str, payload: dict) -> dict:
        started = time.monotonic()
        name = (payload.get("name") or "").strip()
        url = (payload.get("url") or "").strip().rstrip("/")
        api_key = payload.get("apiKey") or ""
        logger.info("%s: action=start name=%s url=%s", JOB_NAME, name, url)

        try:
            if not url or not api_key:
                raise AddServerError("Server URL and API key are required.")
            client = self._client_cls(url, api_key)
            try:
                info = await client.get_system_info()
            except MediaServerError as exc:
                raise AddServerError(exc.user_message) from exc
            except (MediaServerResponseError, MediaServerUnreachableError) as exc:
                raise AddServerError(f"Failed to connect to server: {exc.detail}") from exc

            with Session(self._engine) as session:
                server = Server(
                    name=name or info.get("ServerName") or url,
                    url=url,
                    api_key=api_key,
                    version=info.get("Version"),
                    local_address=info.get("LocalAddress"),
                )
                session.add(server)
                session.commit()
                session.refresh(server)
                server_id = server.id
                server_name = server.name
        except Exception as exc:
            self._result_log.log(
                job_id, JOB_NAME, JobResultStatus.FAILED,
                {"name": name, "url": url}, _elapsed_ms(started), error=exc,
            )
            raise

        sync_job_id = self._queue.enqueue(
            JobName.SEQUENTIAL_SERVER_SYNC.value,
            {"serverId": server_id},
            **INITIAL_SYNC_OPTIONS,
        )
        output = {"serverId": server_id, "name": server_name, "syncJobId": sync_job_id}
        logger.info(
            "%s: action=completed server=%s server_id=%s sync_job=%s",
            JOB_NAME, server_name, server_id, sync_job_id,
        )
        self._result_log.log(
            job_id, JOB_NAME, JobResultStatus.COMPLETED, output, _elapsed_ms(started)
        )
        return output


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
