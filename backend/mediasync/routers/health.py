from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from mediasync.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    queue_status: dict | str = "unavailable"
    queue = getattr(request.app.state, "job_queue", None)
    if queue is not None:
        try:
            queue_status = queue.stats()
        except Exception:
            queue_status = "error"

    worker = getattr(request.app.state, "worker", None)
    worker_status = "running" if worker is not None and worker.running else "stopped"

    scheduler = getattr(request.app.state, "scheduler", None)
    scheduler_status = "enabled" if scheduler is not None and scheduler.enabled else "disabled"

    vector_status = "not_configured"
    if getattr(request.app.state, "qdrant_client", None) is not None:
        vector_status = "ok"

    return {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "service": "mediasync",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "queue": queue_status,
            "worker": worker_status,
            "scheduler": scheduler_status,
            "vectorIndex": vector_status,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "service": "mediasync", "error": str(exc)},
        )
    return {"status": "ready", "service": "mediasync"}
