"""Periodic repair of state left behind by crashed or abandoned runs.

Two rules share one code path for the scheduled sweep and the operator's
manual cleanup:

* servers stuck in ``syncing`` for longer than the sync staleness window are
  failed with an explanatory ``sync_error``;
* job-result rows stuck in ``processing`` past the job staleness window whose
  own heartbeat is older than the heartbeat window are failed in place.

Retention is separate: result rows older than the retention window are
deleted regardless of status.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, update
from sqlmodel import Session, col, select

from mediasync.config import Settings
from mediasync.models.job_result import JobResult, JobResultStatus
from mediasync.models.server import Server, SyncStatus
from mediasync.services.job_queue import JobQueue
from mediasync.services.job_results import JobResultLog
from mediasync.utils.timeutil import as_utc, iso, parse_iso, utcnow

logger = logging.getLogger(__name__)

STALE_JOB_ERROR = "Job exceeded maximum processing time without heartbeat"


@dataclass
class CleanupReport:
    stuck_servers: int = 0
    stale_jobs: int = 0
    expired_queue_jobs: int = 0

    def as_dict(self) -> dict:
        return {
            "stuckServers": self.stuck_servers,
            "staleJobs": self.stale_jobs,
            "expiredQueueJobs": self.expired_queue_jobs,
        }


class StaleStateReconciler:
    def __init__(self, engine, settings: Settings, queue: JobQueue | None = None) -> None:
        self._engine = engine
        self._settings = settings
        self._queue = queue

    def run(self, manual: bool = False) -> CleanupReport:
        """Apply both stale rules and expire overdue queue deliveries."""
        report = CleanupReport()
        report.stuck_servers = self.reset_stuck_servers()
        report.stale_jobs = self.cleanup_stale_jobs(manual=manual)
        if self._queue is not None:
            try:
                report.expired_queue_jobs = self._queue.expire_overdue()
            except Exception:
                logger.error("MAINTENANCE: action=expireQueueJobs failed", exc_info=True)
        return report

    # ── Servers ──────────────────────────────────────────────────────

    def reset_stuck_servers(self) -> int:
        minutes = self._settings.sync_stale_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        message = (
            f"Sync timed out - status was stuck in syncing for more than {minutes} minutes"
        )
        try:
            with Session(self._engine) as session:
                stuck = session.exec(
                    select(Server)
                    .where(Server.sync_status == SyncStatus.SYNCING.value)
                    .where(
                        or_(
                            col(Server.last_sync_started).is_(None),
                            col(Server.last_sync_started) < cutoff,
                        )
                    )
                ).all()
                names = [server.name for server in stuck]
                now = utcnow()
                for server in stuck:
                    server.sync_status = SyncStatus.FAILED.value
                    server.sync_error = message
                    server.updated_at = now
                    session.add(server)
                session.commit()
        except Exception:
            logger.error("MAINTENANCE: action=resetStaleSync failed", exc_info=True)
            return 0

        if names:
            logger.warning(
                "MAINTENANCE: action=resetStaleSync resetCount=%d servers=%s",
                len(names), ",".join(names),
            )
        return len(names)

    def reset_syncing_to_pending(self) -> int:
        """Boot-time cleanup: nothing can be syncing before the worker starts."""
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(Server)
                    .where(Server.sync_status == SyncStatus.SYNCING.value)
                    .values(
                        sync_status=SyncStatus.PENDING.value,
                        sync_error=None,
                        updated_at=utcnow(),
                    )
                )
        except Exception:
            logger.error("Startup cleanup failed", exc_info=True)
            return 0
        if result.rowcount:
            logger.info("Startup cleanup: reset %d server(s) from syncing to pending", result.rowcount)
        return result.rowcount

    # ── Job results ──────────────────────────────────────────────────

    def cleanup_stale_jobs(self, manual: bool = False) -> int:
        """Fail ``processing`` rows that went quiet.

        Each row is judged on its own ``lastHeartbeat`` (or creation time).
        Other rows of the same job do not protect it, since a retried job
        reuses its id.
        """
        now = utcnow()
        created_cutoff = now - timedelta(minutes=self._settings.job_stale_minutes)
        heartbeat_limit = timedelta(seconds=self._settings.heartbeat_stale_seconds)
        cap_ms = self._settings.max_processing_time_ms
        source = "manual" if manual else "scheduled"
        cleaned = 0

        with Session(self._engine) as session:
            candidates = session.exec(
                select(JobResult)
                .where(JobResult.status == JobResultStatus.PROCESSING.value)
                .where(JobResult.created_at < created_cutoff)
                .order_by(JobResult.id)
            ).all()

            for row in candidates:
                stale_for = now - _heartbeat_of(row)
                if stale_for <= heartbeat_limit:
                    continue
                try:
                    payload = _load(row.result_json)
                    payload.update({
                        "error": "Job cleanup - exceeded maximum processing time",
                        "cleanedAt": iso(now),
                        "cleanupSource": source,
                        "staleDuration": int(stale_for.total_seconds() * 1000),
                    })
                    age_ms = int((now - as_utc(row.created_at)).total_seconds() * 1000)
                    row.status = JobResultStatus.FAILED.value
                    row.error = STALE_JOB_ERROR
                    row.processing_time = min(age_ms, cap_ms)
                    row.result_json = json.dumps(payload, default=str)
                    session.add(row)
                    session.commit()
                except Exception:
                    session.rollback()
                    logger.error(
                        "MAINTENANCE: action=staleJob job_id=%s failed", row.job_id, exc_info=True
                    )
                    continue
                cleaned += 1
                logger.info(
                    "MAINTENANCE: action=staleJob job=%s job_id=%s server_id=%s source=%s",
                    row.job_name, row.job_id, row.server_id, source,
                )

        if cleaned:
            logger.info("MAINTENANCE: action=staleJobs cleanedCount=%d source=%s", cleaned, source)
        return cleaned

    # ── Retention ────────────────────────────────────────────────────

    def purge_old_results(self) -> int:
        days = self._settings.job_result_retention_days
        logger.info("MAINTENANCE: action=oldJobCleanup status=starting")
        deleted = JobResultLog(self._engine).purge_older_than(days)
        if self._queue is not None:
            deleted_jobs = self._queue.purge_finished(timedelta(days=days))
            logger.info("MAINTENANCE: action=oldJobCleanup queueJobsDeleted=%d", deleted_jobs)
        logger.info("MAINTENANCE: action=oldJobCleanup deletedCount=%d", deleted)
        return deleted


def _load(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {"value": value}


def _heartbeat_of(row: JobResult) -> datetime:
    payload = _load(row.result_json)
    beat = payload.get("lastHeartbeat")
    parsed = parse_iso(beat) if isinstance(beat, str) else None
    return parsed or as_utc(row.created_at)
