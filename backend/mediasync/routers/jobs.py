"""Operator endpoints: enqueue work, inspect the queue, drive the scheduler."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlmodel import Session

from mediasync.db import get_session
from mediasync.dependencies import (
    get_job_queue,
    get_reconciler,
    get_result_log,
    get_scheduler,
    get_stop_flags,
)
from mediasync.errors import ConfigurationError
from mediasync.models.job import BackgroundJobRead, JobName
from mediasync.models.job_result import JobResultRead
from mediasync.models.server import SYNC_STEPS, EmbeddingProvider, Server, SyncProgress, SyncStatus
from mediasync.services.embedding_providers import EmbeddingConfig, build_embedding_client
from mediasync.services.embedding_worker import StopFlagStore
from mediasync.services.job_queue import JobQueue
from mediasync.services.job_results import JobResultLog
from mediasync.services.reconciler import StaleStateReconciler
from mediasync.services.scheduler import EMBEDDINGS_OPTIONS, SyncScheduler, embedding_payload
from mediasync.services.servers import INITIAL_SYNC_OPTIONS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddServerRequest(CamelModel):
    name: str
    url: str
    api_key: str


class ServerRequest(CamelModel):
    server_id: int


class ActivitySyncRequest(ServerRequest):
    limit: int = 100


class RecentItemsSyncRequest(ServerRequest):
    limit: int = 100


class CancelByTypeRequest(CamelModel):
    job_name: JobName
    server_id: int | None = None


class InferWatchtimeRequest(CamelModel):
    user_id: str | None = None
    triggered_by: str | None = None
    is_admin: bool = False


class SchedulerConfigRequest(CamelModel):
    enabled: bool | None = None
    activity_sync_interval: str | None = None
    user_sync_interval: str | None = None
    recent_items_sync_interval: str | None = None
    people_sync_interval: str | None = None
    embeddings_sync_interval: str | None = None
    job_cleanup_interval: str | None = None
    old_job_cleanup_interval: str | None = None
    full_sync_interval: str | None = None


def _require_server(session: Session, server_id: int) -> Server:
    server = session.get(Server, server_id)
    if server is None:
        raise HTTPException(status_code=404, detail=f"Server {server_id} not found")
    return server


# --- Servers ---


@router.post("/add-server", status_code=202)
async def add_server(body: AddServerRequest, queue: JobQueue = Depends(get_job_queue)):
    if not body.url.strip() or not body.api_key.strip():
        raise HTTPException(status_code=422, detail="Server URL and API key are required")
    job_id = queue.enqueue(
        JobName.ADD_SERVER.value,
        {"name": body.name, "url": body.url, "apiKey": body.api_key},
    )
    return {"success": True, "jobId": job_id, "message": "Add server job queued"}


@router.post("/servers/{server_id}/sync", status_code=202)
async def sync_server(
    server_id: int,
    session: Session = Depends(get_session),
    queue: JobQueue = Depends(get_job_queue),
):
    server = _require_server(session, server_id)
    job_id = queue.enqueue(
        JobName.SEQUENTIAL_SERVER_SYNC.value, {"serverId": server.id}, **INITIAL_SYNC_OPTIONS
    )
    logger.info("Sequential sync queued for server %s (job %s)", server.name, job_id)
    return {"success": True, "jobId": job_id, "serverId": server.id}


@router.get("/servers/{server_id}/sync-status")
async def sync_status(server_id: int, session: Session = Depends(get_session)):
    server = _require_server(session, server_id)
    try:
        step_index = SYNC_STEPS.index(SyncProgress(server.sync_progress))
    except ValueError:
        step_index = 0
    return {
        "serverId": server.id,
        "serverName": server.name,
        "syncStatus": server.sync_status,
        "syncProgress": server.sync_progress,
        "syncError": server.sync_error,
        "lastSyncStarted": server.last_sync_started,
        "lastSyncCompleted": server.last_sync_completed,
        "progressPercentage": round(step_index / (len(SYNC_STEPS) - 1) * 100),
        "isReady": server.sync_status == SyncStatus.COMPLETED.value,
    }


@router.post("/servers/{server_id}/infer-watchtime", status_code=202)
async def infer_watchtime(
    server_id: int,
    body: InferWatchtimeRequest,
    session: Session = Depends(get_session),
    queue: JobQueue = Depends(get_job_queue),
):
    _require_server(session, server_id)
    if not body.user_id and not body.is_admin:
        raise HTTPException(status_code=403, detail="Only admins can trigger inference for all users")
    if body.user_id and not body.is_admin and body.triggered_by != body.user_id:
        raise HTTPException(status_code=403, detail="You can only infer watchtime for yourself")
    job_id = queue.enqueue(
        JobName.INFER_WATCHTIME.value,
        {
            "serverId": server_id,
            "userId": body.user_id,
            "triggeredBy": body.triggered_by,
            "isAdmin": body.is_admin,
        },
    )
    return {"success": True, "jobId": job_id, "message": "Watchtime inference job started"}


# --- Embeddings ---


@router.post("/embeddings/start", status_code=202)
async def start_embeddings(
    body: ServerRequest,
    session: Session = Depends(get_session),
    queue: JobQueue = Depends(get_job_queue),
    stop_flags: StopFlagStore = Depends(get_stop_flags),
):
    server = _require_server(session, body.server_id)
    payload = embedding_payload(server, manual_start=True)
    try:
        build_embedding_client(
            server.embedding_provider, EmbeddingConfig.from_payload(payload["config"])
        )
        provider = EmbeddingProvider.normalize(server.embedding_provider)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if provider.requires_api_key and not server.embedding_api_key:
        raise HTTPException(status_code=400, detail="API key required for this provider.")

    if queue.has_open_job(JobName.GENERATE_ITEM_EMBEDDINGS.value, server.id):
        raise HTTPException(status_code=409, detail="Embedding generation is already running")

    stop_flags.clear(server.id)
    job_id = queue.enqueue(
        JobName.GENERATE_ITEM_EMBEDDINGS.value,
        payload,
        singleton_key=f"embeddings-sync:{server.id}",
        **EMBEDDINGS_OPTIONS,
    )
    if job_id is None:
        raise HTTPException(status_code=409, detail="Embedding generation is already running")
    return {"success": True, "jobId": job_id, "message": "Embedding generation started"}


@router.post("/embeddings/stop")
async def stop_embeddings(
    body: ServerRequest,
    session: Session = Depends(get_session),
    queue: JobQueue = Depends(get_job_queue),
    stop_flags: StopFlagStore = Depends(get_stop_flags),
):
    server = _require_server(session, body.server_id)
    stop_flags.request_stop(server.id)
    cancelled = queue.cancel_by_name(JobName.GENERATE_ITEM_EMBEDDINGS.value, server.id)
    logger.info(
        "Embedding stop requested for server %s (cancelled %d queued job(s))",
        server.name, cancelled,
    )
    return {"success": True, "cancelledJobs": cancelled, "message": "Stop requested"}


# --- Queue ---


@router.post("/cancel-by-type")
async def cancel_by_type(body: CancelByTypeRequest, queue: JobQueue = Depends(get_job_queue)):
    cancelled = queue.cancel_by_name(body.job_name.value, body.server_id)
    return {"success": True, "cancelledCount": cancelled}


@router.get("/queue/stats")
async def queue_stats(queue: JobQueue = Depends(get_job_queue)):
    states = queue.stats()
    return {
        "queues": {
            name.value: {
                "queued": queue.queue_size(name.value),
                "states": states.get(name.value, {}),
            }
            for name in JobName
        }
    }


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    queue: JobQueue = Depends(get_job_queue),
    result_log: JobResultLog = Depends(get_result_log),
):
    job = queue.get_job_by_id(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    latest = result_log.latest_for(job_id)
    return {
        "job": BackgroundJobRead.model_validate(job),
        "payload": json.loads(job.payload_json or "{}"),
        "latestResult": JobResultRead.model_validate(latest) if latest else None,
    }


@router.get("/results", response_model=list[JobResultRead])
async def recent_results(
    limit: int = Query(50, ge=1, le=500),
    job_name: str | None = Query(None, alias="jobName"),
    server_id: int | None = Query(None, alias="serverId"),
    result_log: JobResultLog = Depends(get_result_log),
) -> list[JobResultRead]:
    rows = result_log.recent(limit=limit, job_name=job_name, server_id=server_id)
    return [JobResultRead.model_validate(row) for row in rows]


# --- Scheduler ---


@router.get("/scheduler/status")
async def scheduler_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    return scheduler.get_status()


@router.put("/scheduler/config")
async def scheduler_config(
    body: SchedulerConfigRequest, scheduler: SyncScheduler = Depends(get_scheduler)
):
    values = body.model_dump(exclude_none=True)
    enabled = values.pop("enabled", None)
    try:
        status = scheduler.update_config(enabled=enabled, **values)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "status": status}


@router.post("/scheduler/trigger", status_code=202)
async def trigger_activity_sync(
    body: ActivitySyncRequest,
    session: Session = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    _require_server(session, body.server_id)
    job_id = scheduler.trigger_server_activity_sync(body.server_id, body.limit)
    return {"success": True, "jobId": job_id, "message": "Activity sync queued"}


@router.post("/scheduler/trigger-user-sync", status_code=202)
async def trigger_user_sync(
    body: ServerRequest,
    session: Session = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    _require_server(session, body.server_id)
    job_id = scheduler.trigger_server_user_sync(body.server_id)
    return {"success": True, "jobId": job_id, "message": "User sync queued"}


@router.post("/scheduler/trigger-full-sync", status_code=202)
async def trigger_full_sync(
    body: ServerRequest,
    session: Session = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    _require_server(session, body.server_id)
    job_id = scheduler.trigger_server_full_sync(body.server_id)
    return {"success": True, "jobId": job_id, "message": "Full sync queued"}


@router.post("/scheduler/trigger-recent-items-sync", status_code=202)
async def trigger_recent_items_sync(
    body: RecentItemsSyncRequest,
    session: Session = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    _require_server(session, body.server_id)
    job_id = scheduler.trigger_server_recent_items_sync(body.server_id, body.limit)
    return {"success": True, "jobId": job_id, "message": "Recent items sync queued"}


@router.post("/scheduler/trigger-people-sync", status_code=202)
async def trigger_people_sync(
    body: ServerRequest,
    session: Session = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    _require_server(session, body.server_id)
    job_id = scheduler.trigger_server_people_sync(body.server_id)
    return {"success": True, "jobId": job_id, "message": "People sync queued"}

# --- Maintenance ---


@router.post("/maintenance/cleanup-stale")
async def cleanup_stale(reconciler: StaleStateReconciler = Depends(get_reconciler)):
    report = reconciler.run(manual=True)
    return {"success": True, **report.as_dict()}
