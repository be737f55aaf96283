"""Durable job queue backed by the ``background_jobs`` table.

Delivery is at-least-once: a worker claims a due job with a conditional
UPDATE (``created``/``retry`` -> ``active``) so only one worker wins a given
delivery. Failed attempts go back to ``retry`` with a fixed delay until the
job's retry limit is used up. A singleton key limits a job name to one open
(created, retry or active) job per key; the partial unique index on the table
backs this up when two enqueues race.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from mediasync.config import Settings
from mediasync.errors import QueueError
from mediasync.models.job import OPEN_STATES, BackgroundJob, JobState
from mediasync.utils.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

_CLAIMABLE_STATES = (JobState.CREATED.value, JobState.RETRY.value)


def _server_id_of(payload: dict) -> int | None:
    value = payload.get("serverId")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class JobQueue:
    """Enqueue, claim and settle background jobs."""

    def __init__(self, engine, settings: Settings) -> None:
        self._engine = engine
        self._settings = settings

    # ── Producer side ────────────────────────────────────────────────

    def enqueue(
        self,
        name: str,
        payload: dict | None = None,
        *,
        expire_in_minutes: int | None = None,
        retry_limit: int | None = None,
        retry_delay_seconds: int | None = None,
        singleton_key: str | None = None,
        start_after: datetime | None = None,
    ) -> str | None:
        """Persist a new job and return its id.

        Returns None without writing anything when ``singleton_key`` is set and
        an open job with the same name and key already exists.
        """
        payload = payload or {}
        now = utcnow()
        job = BackgroundJob(
            name=name,
            payload_json=json.dumps(payload, default=str),
            singleton_key=singleton_key,
            server_id=_server_id_of(payload),
            retry_limit=(
                retry_limit if retry_limit is not None
                else self._settings.queue_default_retry_limit
            ),
            retry_delay_seconds=(
                retry_delay_seconds if retry_delay_seconds is not None
                else self._settings.queue_default_retry_delay_seconds
            ),
            expire_in_minutes=(
                expire_in_minutes if expire_in_minutes is not None
                else self._settings.queue_default_expire_minutes
            ),
            start_after=start_after or now,
            created_at=now,
            updated_at=now,
        )
        job_id = job.id

        try:
            with Session(self._engine) as session:
                if singleton_key is not None:
                    existing = session.exec(
                        select(BackgroundJob.id)
                        .where(BackgroundJob.name == name)
                        .where(BackgroundJob.singleton_key == singleton_key)
                        .where(col(BackgroundJob.state).in_(OPEN_STATES))
                    ).first()
                    if existing is not None:
                        logger.debug(
                            "Skipped enqueue of %s: open job %s holds key %s",
                            name, existing, singleton_key,
                        )
                        return None
                session.add(job)
                session.commit()
        except IntegrityError:
            logger.debug("Skipped enqueue of %s: singleton key %s taken", name, singleton_key)
            return None
        except SQLAlchemyError as exc:
            raise QueueError(f"Failed to enqueue {name}: {exc}") from exc

        logger.debug("Job enqueued: %s (id=%s)", name, job_id)
        return job_id

    def cancel(self, job_ids: Iterable[str]) -> int:
        """Cancel open jobs by id.

        An attempt that is already executing keeps running; only its future
        deliveries and its final state change are suppressed.
        """
        ids = list(job_ids)
        if not ids:
            return 0
        now = utcnow()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(BackgroundJob)
                .where(col(BackgroundJob.id).in_(ids))
                .where(col(BackgroundJob.state).in_(OPEN_STATES))
                .values(
                    state=JobState.CANCELLED.value,
                    completed_at=now,
                    updated_at=now,
                )
            )
        return result.rowcount

    def cancel_by_name(self, name: str, server_id: int | None = None) -> int:
        """Cancel every open job with this name, optionally for one server only."""
        with Session(self._engine) as session:
            stmt = (
                select(BackgroundJob.id)
                .where(BackgroundJob.name == name)
                .where(col(BackgroundJob.state).in_(OPEN_STATES))
            )
            if server_id is not None:
                stmt = stmt.where(BackgroundJob.server_id == server_id)
            ids = list(session.exec(stmt).all())
        cancelled = self.cancel(ids)
        if cancelled:
            logger.info(
                "Cancelled %d %s job(s)%s",
                cancelled, name,
                f" for server {server_id}" if server_id is not None else "",
            )
        return cancelled

    # ── Queries ──────────────────────────────────────────────────────

    def get_job_by_id(self, job_id: str) -> BackgroundJob | None:
        with Session(self._engine) as session:
            return session.get(BackgroundJob, job_id)

    def queue_size(self, name: str) -> int:
        """Number of jobs waiting for delivery (created or retry)."""
        with Session(self._engine) as session:
            return session.exec(
                select(func.count())
                .select_from(BackgroundJob)
                .where(BackgroundJob.name == name)
                .where(col(BackgroundJob.state).in_(_CLAIMABLE_STATES))
            ).one()

    def has_open_job(self, name: str, server_id: int) -> bool:
        """True if a created, retrying or active job exists for this server."""
        with Session(self._engine) as session:
            found = session.exec(
                select(BackgroundJob.id)
                .where(BackgroundJob.name == name)
                .where(BackgroundJob.server_id == server_id)
                .where(col(BackgroundJob.state).in_(OPEN_STATES))
            ).first()
        return found is not None

    def stats(self) -> dict[str, dict[str, int]]:
        """Job counts keyed by name then state."""
        with Session(self._engine) as session:
            rows = session.exec(
                select(BackgroundJob.name, BackgroundJob.state, func.count())
                .group_by(BackgroundJob.name, BackgroundJob.state)
            ).all()
        counts: dict[str, dict[str, int]] = {}
        for name, state, count in rows:
            counts.setdefault(name, {})[state] = count
        return counts

    # ── Worker side ──────────────────────────────────────────────────

    def fetch_next(self, names: Iterable[str] | None = None) -> BackgroundJob | None:
        """Claim the oldest due job, marking it active. None if nothing is due."""
        now = utcnow()
        with Session(self._engine) as session:
            stmt = (
                select(BackgroundJob.id)
                .where(col(BackgroundJob.state).in_(_CLAIMABLE_STATES))
                .where(BackgroundJob.start_after <= now)
                .order_by(BackgroundJob.created_at)
                .limit(5)
            )
            if names is not None:
                stmt = stmt.where(col(BackgroundJob.name).in_(list(names)))
            candidate_ids = list(session.exec(stmt).all())

        for job_id in candidate_ids:
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(BackgroundJob)
                    .where(BackgroundJob.id == job_id)
                    .where(col(BackgroundJob.state).in_(_CLAIMABLE_STATES))
                    .values(
                        state=JobState.ACTIVE.value,
                        started_at=now,
                        updated_at=now,
                    )
                )
            if result.rowcount == 1:
                return self.get_job_by_id(job_id)
        return None

    def complete(self, job_id: str, output: dict | None = None) -> bool:
        """Mark an active job completed. False if it was cancelled or expired meanwhile."""
        now = utcnow()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id)
                .where(BackgroundJob.state == JobState.ACTIVE.value)
                .values(
                    state=JobState.COMPLETED.value,
                    output_json=json.dumps(output, default=str) if output is not None else None,
                    completed_at=now,
                    updated_at=now,
                )
            )
        return result.rowcount == 1

    def fail(self, job_id: str, error: str) -> str | None:
        """Record a failed attempt. Returns the job's new state.

        The job goes back to ``retry`` after ``retry_delay_seconds`` while
        attempts remain, otherwise it becomes ``failed``.
        """
        now = utcnow()
        with Session(self._engine) as session:
            job = session.get(BackgroundJob, job_id)
            if job is None:
                return None
            if job.state != JobState.ACTIVE.value:
                return job.state
            job.error_message = error[:2000] if error else None
            job.updated_at = now
            if job.retry_count < job.retry_limit:
                job.retry_count += 1
                job.state = JobState.RETRY.value
                job.start_after = now + timedelta(seconds=job.retry_delay_seconds)
                logger.info(
                    "Scheduled %s retry %d/%d at %s (id=%s)",
                    job.name, job.retry_count, job.retry_limit,
                    job.start_after.isoformat(), job.id,
                )
            else:
                job.state = JobState.FAILED.value
                job.completed_at = now
            session.add(job)
            session.commit()
            return job.state

    def expire_overdue(self) -> int:
        """Expire active jobs that outlived ``expire_in_minutes``.

        An expired attempt is retried like a failure while attempts remain.
        """
        now = utcnow()
        expired = 0
        with Session(self._engine) as session:
            active = session.exec(
                select(BackgroundJob).where(BackgroundJob.state == JobState.ACTIVE.value)
            ).all()
            for job in active:
                started = as_utc(job.started_at) or as_utc(job.created_at)
                if started + timedelta(minutes=job.expire_in_minutes) > now:
                    continue
                job.updated_at = now
                job.error_message = f"Job expired after {job.expire_in_minutes} minutes"
                if job.retry_count < job.retry_limit:
                    job.retry_count += 1
                    job.state = JobState.RETRY.value
                    job.start_after = now + timedelta(seconds=job.retry_delay_seconds)
                else:
                    job.state = JobState.EXPIRED.value
                    job.completed_at = now
                session.add(job)
                expired += 1
                logger.warning("Job %s (id=%s) expired while active", job.name, job.id)
            if expired:
                session.commit()
        return expired

    def recover_incomplete_jobs(self) -> int:
        """Settle jobs left active by a previous process.

        Called once at startup. Each one counts as a failed attempt.
        """
        recovered = 0
        with Session(self._engine) as session:
            ids = list(
                session.exec(
                    select(BackgroundJob.id)
                    .where(BackgroundJob.state == JobState.ACTIVE.value)
                ).all()
            )
        for job_id in ids:
            self.fail(job_id, "Worker restarted while job was active")
            recovered += 1
        if recovered:
            logger.info("Recovered %d incomplete jobs from previous run", recovered)
        return recovered

    def purge_finished(self, older_than: timedelta) -> int:
        """Delete terminal jobs that finished before ``now - older_than``."""
        cutoff = utcnow() - older_than
        with self._engine.begin() as conn:
            result = conn.execute(
                delete(BackgroundJob)
                .where(col(BackgroundJob.state).notin_(OPEN_STATES))
                .where(BackgroundJob.updated_at < cutoff)
            )
        return result.rowcount
