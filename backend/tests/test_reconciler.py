"""Tests for stale-state repair and retention."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock

from sqlmodel import Session, select

from mediasync.models.job import BackgroundJob
from mediasync.models.job_result import JobResult
from mediasync.models.server import Server, SyncProgress, SyncStatus
from mediasync.services.reconciler import STALE_JOB_ERROR, StaleStateReconciler
from mediasync.utils.timeutil import iso, utcnow


def _add_result(engine, job_id: str, status: str, minutes_ago: float, payload=None) -> int:
    with Session(engine) as session:
        row = JobResult(
            job_id=job_id,
            job_name="generate-item-embeddings",
            status=status,
            server_id=1,
            result_json=json.dumps(payload) if payload is not None else None,
            created_at=utcnow() - timedelta(minutes=minutes_ago),
        )
        session.add(row)
        session.commit()
        session.refresh(row)
        return row.id


def _result(engine, row_id: int) -> JobResult:
    with Session(engine) as session:
        return session.get(JobResult, row_id)


def _set_syncing(engine, server_id: int, minutes_ago: float | None) -> None:
    with Session(engine) as session:
        server = session.get(Server, server_id)
        server.sync_status = SyncStatus.SYNCING.value
        server.sync_progress = SyncProgress.ITEMS.value
        server.last_sync_started = (
            utcnow() - timedelta(minutes=minutes_ago) if minutes_ago is not None else None
        )
        session.add(server)
        session.commit()


def _server(engine, server_id: int) -> Server:
    with Session(engine) as session:
        return session.get(Server, server_id)


# ── Stuck servers ─────────────────────────────────────────────────────


class TestStuckServers:
    def test_old_sync_failed_with_message(self, engine, reconciler, make_server):
        server_id = make_server()
        _set_syncing(engine, server_id, 45)

        assert reconciler.reset_stuck_servers() == 1
        server = _server(engine, server_id)
        assert server.sync_status == SyncStatus.FAILED.value
        assert server.sync_error == (
            "Sync timed out - status was stuck in syncing for more than 30 minutes"
        )

    def test_recent_sync_left_alone(self, engine, reconciler, make_server):
        server_id = make_server()
        _set_syncing(engine, server_id, 5)

        assert reconciler.reset_stuck_servers() == 0
        assert _server(engine, server_id).sync_status == SyncStatus.SYNCING.value

    def test_syncing_without_start_time(self, engine, reconciler, make_server):
        server_id = make_server()
        _set_syncing(engine, server_id, None)
        assert reconciler.reset_stuck_servers() == 1

    def test_startup_reset_to_pending(self, engine, reconciler, make_server):
        busy = make_server(name="Busy")
        done = make_server(name="Done", sync_status=SyncStatus.COMPLETED.value)
        _set_syncing(engine, busy, 1)

        assert reconciler.reset_syncing_to_pending() == 1
        assert _server(engine, busy).sync_status == SyncStatus.PENDING.value
        assert _server(engine, done).sync_status == SyncStatus.COMPLETED.value


# ── Stale job results ─────────────────────────────────────────────────


class TestStaleJobs:
    def test_old_processing_row_failed(self, engine, reconciler):
        row_id = _add_result(engine, "job-1", "processing", 15, {"serverId": 1, "status": "starting"})

        assert reconciler.cleanup_stale_jobs() == 1

        row = _result(engine, row_id)
        assert row.status == "failed"
        assert row.error == STALE_JOB_ERROR
        payload = json.loads(row.result_json)
        assert payload["serverId"] == 1
        assert payload["error"] == "Job cleanup - exceeded maximum processing time"
        assert payload["cleanupSource"] == "scheduled"
        assert payload["staleDuration"] >= 15 * 60 * 1000 - 1000
        assert row.processing_time >= 15 * 60 * 1000 - 1000

    def test_young_processing_row_untouched(self, engine, reconciler):
        row_id = _add_result(engine, "job-2", "processing", 5)
        assert reconciler.cleanup_stale_jobs() == 0
        assert _result(engine, row_id).status == "processing"

    def test_recent_heartbeat_in_payload_keeps_row(self, engine, reconciler):
        row_id = _add_result(
            engine, "job-3", "processing", 20,
            {"lastHeartbeat": iso(utcnow() - timedelta(seconds=30))},
        )
        assert reconciler.cleanup_stale_jobs() == 0
        assert _result(engine, row_id).status == "processing"

    def test_old_progress_row_failed_while_newest_row_is_fresh(self, engine, reconciler):
        first = _add_result(engine, "job-4", "processing", 25, {"status": "starting"})
        latest = _add_result(engine, "job-4", "processing", 0.5, {"lastHeartbeat": iso(utcnow())})

        assert reconciler.cleanup_stale_jobs() == 1
        assert _result(engine, first).status == "failed"
        assert _result(engine, latest).status == "processing"

    def test_processing_row_of_completed_job_failed(self, engine, reconciler):
        first = _add_result(engine, "job-5", "processing", 60)
        done = _add_result(engine, "job-5", "completed", 50)

        assert reconciler.cleanup_stale_jobs() == 1
        assert _result(engine, first).status == "failed"
        assert _result(engine, done).status == "completed"

    def test_retry_attempt_not_hidden_by_earlier_failure(self, engine, reconciler):
        # Same queue job id across attempts: attempt 1 failed, attempt 2 went quiet
        _add_result(engine, "job-r", "processing", 120)
        _add_result(engine, "job-r", "failed", 110)
        retry = _add_result(
            engine, "job-r", "processing", 60,
            {"lastHeartbeat": iso(utcnow() - timedelta(minutes=55))},
        )

        assert reconciler.cleanup_stale_jobs() == 2
        assert _result(engine, retry).status == "failed"
        assert reconciler.cleanup_stale_jobs() == 0

    def test_processing_time_capped(self, engine, settings, queue):
        settings.max_processing_time_ms = 60_000
        reconciler = StaleStateReconciler(engine, settings, queue)
        row_id = _add_result(engine, "job-6", "processing", 600)

        reconciler.cleanup_stale_jobs(manual=True)

        row = _result(engine, row_id)
        assert row.processing_time == 60_000
        assert json.loads(row.result_json)["cleanupSource"] == "manual"

    def test_every_stale_row_of_a_job_failed(self, engine, reconciler):
        a = _add_result(engine, "job-7", "processing", 40)
        b = _add_result(
            engine, "job-7", "processing", 30,
            {"lastHeartbeat": iso(utcnow() - timedelta(minutes=30))},
        )

        assert reconciler.cleanup_stale_jobs() == 2
        assert _result(engine, a).status == "failed"
        assert _result(engine, b).status == "failed"


# ── Sweep and retention ───────────────────────────────────────────────


class TestRun:
    def test_run_reports_all_rules(self, engine, reconciler, queue, make_server):
        server_id = make_server()
        _set_syncing(engine, server_id, 90)
        _add_result(engine, "job-8", "processing", 30)
        job_id = queue.enqueue(
            "media-full-sync", {"serverId": server_id}, expire_in_minutes=1, retry_limit=0
        )
        queue.fetch_next()
        with Session(engine) as session:
            job = session.get(BackgroundJob, job_id)
            job.started_at = utcnow() - timedelta(minutes=10)
            session.add(job)
            session.commit()

        report = reconciler.run(manual=True)

        assert report.as_dict() == {"stuckServers": 1, "staleJobs": 1, "expiredQueueJobs": 1}

    def test_queue_failure_does_not_abort_sweep(self, engine, settings):
        queue = MagicMock()
        queue.expire_overdue.side_effect = RuntimeError("database is locked")
        _add_result(engine, "job-9", "processing", 30)

        report = StaleStateReconciler(engine, settings, queue).run()

        assert report.stale_jobs == 1
        assert report.expired_queue_jobs == 0

    def test_purge_old_results(self, engine, reconciler, queue):
        _add_result(engine, "old", "completed", 11 * 24 * 60)
        _add_result(engine, "older-processing", "processing", 30 * 24 * 60)
        _add_result(engine, "new", "completed", 60)

        assert reconciler.purge_old_results() == 2
        with Session(engine) as session:
            remaining = [r.job_id for r in session.exec(select(JobResult)).all()]
        assert remaining == ["new"]
