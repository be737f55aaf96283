from __future__ import annotations

import os
import tempfile

# Set test environment BEFORE importing mediasync modules.
# mediasync.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any mediasync imports.
_test_tmp = tempfile.mkdtemp(prefix="mediasync-test-")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp, "data"))
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_AUTO_START", "false")
os.environ.setdefault("REVALIDATE_URL", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import mediasync.models  # noqa: F401
from mediasync.config import Settings
from mediasync.db import get_session
from mediasync.main import app as fastapi_app
from mediasync.models.media import Item, Library
from mediasync.models.server import Server
from mediasync.services.embedding_worker import StopFlagStore
from mediasync.services.job_queue import JobQueue
from mediasync.services.job_results import JobResultLog
from mediasync.services.reconciler import StaleStateReconciler
from mediasync.services.scheduler import SyncScheduler


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite shared across connections, fresh tables per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    """Settings with the rate-limit sleeps turned off."""
    return Settings(
        data_dir=tmp_path,
        db_url="sqlite://",
        scheduler_auto_start=False,
        revalidate_url="",
        embedding_batch_delay_ms=0,
        embedding_item_delay_ms=0,
    )


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture(name="queue")
def queue_fixture(engine, settings) -> JobQueue:
    return JobQueue(engine, settings)


@pytest.fixture(name="result_log")
def result_log_fixture(engine) -> JobResultLog:
    return JobResultLog(engine)


@pytest.fixture(name="reconciler")
def reconciler_fixture(engine, settings, queue) -> StaleStateReconciler:
    return StaleStateReconciler(engine, settings, queue)


@pytest.fixture(name="make_server")
def make_server_fixture(engine):
    """Factory inserting a server row; returns its id."""

    def _make(**overrides) -> int:
        values = {
            "name": "Living Room",
            "url": "http://jellyfin.local:8096",
            "api_key": "secret-key",
        }
        values.update(overrides)
        with Session(engine) as session:
            server = Server(**values)
            session.add(server)
            session.commit()
            session.refresh(server)
            return server.id

    return _make


@pytest.fixture(name="make_items")
def make_items_fixture(engine):
    """Factory inserting catalog items under one library for a server."""

    def _make(server_id: int, count: int, library_id: str = "lib-1", **fields) -> list[str]:
        ids = []
        with Session(engine) as session:
            if session.get(Library, library_id) is None:
                session.add(Library(id=library_id, server_id=server_id, name="Movies"))
                session.flush()
            for i in range(count):
                item_id = f"{library_id}-item-{i:04d}"
                values = {
                    "name": f"Movie {i}",
                    "type": "Movie",
                    "overview": f"Overview of movie {i}",
                }
                values.update(fields)
                session.add(Item(id=item_id, server_id=server_id, library_id=library_id, **values))
                ids.append(item_id)
            session.commit()
        return ids

    return _make


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(engine, session, settings, queue, result_log, reconciler):
    """TestClient wired to the test database.

    The lifespan is not run, so no worker threads or timers are started;
    services are placed on app.state directly.
    """

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    fastapi_app.state.job_queue = queue
    fastapi_app.state.result_log = result_log
    fastapi_app.state.reconciler = reconciler
    fastapi_app.state.stop_flags = StopFlagStore(engine)
    fastapi_app.state.scheduler = SyncScheduler(engine, queue, reconciler, settings)
    client = TestClient(fastapi_app)
    yield client
    fastapi_app.dependency_overrides.clear()
    for name in ("job_queue", "result_log", "reconciler", "stop_flags", "scheduler"):
        delattr(fastapi_app.state, name)
