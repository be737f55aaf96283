from __future__ import annotations

import json
import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlmodel import Session, col, select

from mediasync.models.job_result import JobResult, JobResultStatus
from mediasync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class JobResultLog:
    """Append-only log of job progress and outcomes."""

    def __init__(self, engine) -> None:
        self._engine = engine

    def log(
        self,
        job_id: str,
        job_name: str,
        status: JobResultStatus | str,
        result: dict | None,
        processing_time_ms: int,
        error: BaseException | str | None = None,
    ) -> None:
        """Append an entry. Never raises: losing a log line must not fail a job."""
        status_value = status.value if isinstance(status, JobResultStatus) else status
        server_id = None
        if result and result.get("serverId") is not None:
            try:
                server_id = int(result["serverId"])
            except (TypeError, ValueError):
                server_id = None
        try:
            with Session(self._engine) as session:
                session.add(
                    JobResult(
                        job_id=job_id,
                        job_name=job_name,
                        status=status_value,
                        server_id=server_id,
                        result_json=json.dumps(result, default=str) if result is not None else None,
                        error=str(error) if error else None,
                        processing_time=int(processing_time_ms),
                    )
                )
                session.commit()
        except Exception:
            logger.error(
                "Failed to log job result: job=%s name=%s status=%s",
                job_id, job_name, status_value, exc_info=True,
            )

    def recent(
        self,
        limit: int = 50,
        job_name: str | None = None,
        server_id: int | None = None,
    ) -> list[JobResult]:
        with Session(self._engine) as session:
            stmt = select(JobResult).order_by(col(JobResult.id).desc()).limit(limit)
            if job_name:
                stmt = stmt.where(JobResult.job_name == job_name)
            if server_id is not None:
                stmt = stmt.where(JobResult.server_id == server_id)
            return list(session.exec(stmt).all())

    def latest_for(self, job_id: str) -> JobResult | None:
        with Session(self._engine) as session:
            return session.exec(
                select(JobResult)
                .where(JobResult.job_id == job_id)
                .order_by(col(JobResult.id).desc())
            ).first()

    def purge_older_than(self, days: int) -> int:
        """Delete entries older than ``days`` regardless of status."""
        cutoff = utcnow() - timedelta(days=days)
        with self._engine.begin() as conn:
            result = conn.execute(delete(JobResult).where(JobResult.created_at < cutoff))
        return result.rowcount
