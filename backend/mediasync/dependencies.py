"""FastAPI dependencies that hand out the services built in the lifespan."""

from __future__ import annotations

from fastapi import HTTPException, Request

from mediasync.services.embedding_worker import StopFlagStore
from mediasync.services.job_queue import JobQueue
from mediasync.services.job_results import JobResultLog
from mediasync.services.reconciler import StaleStateReconciler
from mediasync.services.scheduler import SyncScheduler


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not available")
    return service


def get_job_queue(request: Request) -> JobQueue:
    return _state(request, "job_queue")


def get_result_log(request: Request) -> JobResultLog:
    return _state(request, "result_log")


def get_scheduler(request: Request) -> SyncScheduler:
    return _state(request, "scheduler")


def get_reconciler(request: Request) -> StaleStateReconciler:
    return _state(request, "reconciler")


def get_stop_flags(request: Request) -> StopFlagStore:
    return _state(request, "stop_flags")
