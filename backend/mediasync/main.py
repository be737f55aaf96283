from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from qdrant_client import QdrantClient

import mediasync.models  # noqa: F401  registers SQLModel tables

from mediasync.config import get_settings
from mediasync.db import create_db_and_tables, engine
from mediasync.routers import health, jobs
from mediasync.services.embedding_worker import (
    EmbeddingWorker,
    RecommendationCacheNotifier,
    StopFlagStore,
    VectorIndex,
)
from mediasync.services.inferred_sessions import InferWatchtimeJob
from mediasync.services.job_queue import JobQueue
from mediasync.services.job_results import JobResultLog
from mediasync.services.people_sync import PeopleSyncJob
from mediasync.services.reconciler import StaleStateReconciler
from mediasync.services.scheduler import SyncScheduler
from mediasync.services.sequential_sync import SequentialSyncPipeline
from mediasync.services.servers import AddServerJob
from mediasync.worker import BackgroundWorker, build_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()

    queue = JobQueue(engine, settings)
    result_log = JobResultLog(engine)
    reconciler = StaleStateReconciler(engine, settings, queue)
    stop_flags = StopFlagStore(engine)

    # Qdrant is optional: without it vectors stay in SQLite only
    qdrant_client = None
    try:
        qdrant_client = QdrantClient(url=settings.qdrant_url)
    except Exception:
        logger.warning(
            "Failed to initialize Qdrant client; embeddings will not be indexed",
            exc_info=True,
        )
    index = VectorIndex(qdrant_client, settings.embedding_index_max_dimensions)

    pipeline = SequentialSyncPipeline(engine, result_log)
    embedding_worker = EmbeddingWorker(
        engine,
        result_log,
        settings,
        index,
        stop_flags=stop_flags,
        notifier=RecommendationCacheNotifier(settings.revalidate_url),
    )
    handlers = build_handlers(
        pipeline,
        embedding_worker,
        AddServerJob(engine, queue, result_log),
        InferWatchtimeJob(engine, result_log),
        PeopleSyncJob(engine, result_log, settings),
    )

    # Crash recovery before anything can claim work
    reconciler.reset_syncing_to_pending()
    queue.recover_incomplete_jobs()

    worker = BackgroundWorker(queue, handlers, settings)
    worker.start()

    scheduler = SyncScheduler(engine, queue, reconciler, settings)
    if settings.scheduler_auto_start:
        scheduler.start()

    app.state.job_queue = queue
    app.state.result_log = result_log
    app.state.reconciler = reconciler
    app.state.stop_flags = stop_flags
    app.state.qdrant_client = qdrant_client
    app.state.vector_index = index
    app.state.worker = worker
    app.state.scheduler = scheduler

    yield

    scheduler.stop()
    worker.stop()
    if qdrant_client is not None:
        qdrant_client.close()


app = FastAPI(
    title="mediasync",
    description="Job orchestration and sync pipeline for self-hosted media servers",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(jobs.router)
