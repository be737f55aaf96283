"""Cron-driven scheduler that turns intervals into queued jobs.

Ticks only enqueue; sync and embedding work always runs on the worker pool,
so a tick's duration does not depend on how long a sync takes. Periodic
enqueues carry a ``<family>:<serverId>`` singleton key, so repeated ticks
for the same server never stack up open jobs.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import and_, func, or_
from sqlmodel import Session, col, select

from mediasync.config import Settings, validate_cron
from mediasync.models.job import JobName
from mediasync.models.media import EMBEDDABLE_ITEM_TYPES, Item
from mediasync.models.server import EmbeddingProvider, Server, SyncStatus
from mediasync.services.embedding_providers import EmbeddingConfig
from mediasync.services.job_queue import JobQueue
from mediasync.services.reconciler import StaleStateReconciler
from mediasync.utils.timeutil import iso, utcnow

logger = logging.getLogger(__name__)

# family -> settings field holding its cron expression
INTERVAL_FIELDS: dict[str, str] = {
    "activity-sync": "activity_sync_interval",
    "user-sync": "user_sync_interval",
    "recent-items-sync": "recent_items_sync_interval",
    "people-sync": "people_sync_interval",
    "embeddings-sync": "embeddings_sync_interval",
    "job-cleanup": "job_cleanup_interval",
    "old-job-cleanup": "old_job_cleanup_interval",
    "full-sync": "full_sync_interval",
}

# Enqueue policy per job family: expiry window, retries, retry delay
ACTIVITY_SYNC_OPTIONS = {"expire_in_minutes": 30, "retry_limit": 1, "retry_delay_seconds": 60}
USER_SYNC_OPTIONS = {"expire_in_minutes": 30, "retry_limit": 1, "retry_delay_seconds": 60}
RECENT_ITEMS_SYNC_OPTIONS = {"expire_in_minutes": 30, "retry_limit": 1, "retry_delay_seconds": 60}
PEOPLE_SYNC_OPTIONS = {"expire_in_minutes": 60, "retry_limit": 1, "retry_delay_seconds": 60}
FULL_SYNC_OPTIONS = {"expire_in_minutes": 360, "retry_limit": 1, "retry_delay_seconds": 300}
EMBEDDINGS_OPTIONS = {"expire_in_minutes": 60, "retry_limit": 1, "retry_delay_seconds": 60}

DEFAULT_ACTIVITY_LIMIT = 100


def _camel(field_name: str) -> str:
    head, *rest = field_name.split("_")
    return head + "".join(part.title() for part in rest)


class SyncScheduler:
    """Owns the APScheduler instance and the per-family cron intervals.

    ``start``/``stop`` may be called repeatedly; ``update_config`` restarts a
    running scheduler so new intervals take effect immediately.
    """

    def __init__(
        self,
        engine,
        queue: JobQueue,
        reconciler: StaleStateReconciler,
        settings: Settings,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._reconciler = reconciler
        self._settings = settings
        self._intervals: dict[str, str] = {
            family: getattr(settings, field) for family, field in INTERVAL_FIELDS.items()
        }
        self._scheduler: AsyncIOScheduler | None = None
        self.enabled = False

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        if self.enabled:
            logger.info("Scheduler is already running")
            return

        ticks = {
            "activity-sync": self.trigger_activity_sync,
            "user-sync": self.trigger_user_sync,
            "recent-items-sync": self.trigger_recent_items_sync,
            "people-sync": self.trigger_people_sync,
            "embeddings-sync": self.trigger_embeddings_sync,
            "job-cleanup": self.trigger_job_cleanup,
            "old-job-cleanup": self.trigger_old_job_cleanup,
            "full-sync": self.trigger_full_sync,
        }
        scheduler = AsyncIOScheduler()
        for family, tick in ticks.items():
            scheduler.add_job(
                tick,
                trigger=CronTrigger.from_crontab(self._intervals[family]),
                id=family,
                name=family,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        scheduler.start()
        self._scheduler = scheduler
        self.enabled = True
        logger.info(
            "Scheduler started: %s",
            ", ".join(f"{family}={expr}" for family, expr in self._intervals.items()),
        )

    def stop(self) -> None:
        if not self.enabled:
            logger.info("Scheduler is not running")
            return
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self.enabled = False
        logger.info("Scheduler stopped")

    def update_config(self, enabled: bool | None = None, **intervals: str | None) -> dict:
        """Replace intervals and optionally toggle the scheduler.

        Keyword names are the settings fields (``activity_sync_interval``...).
        Every expression is validated before anything changes.
        """
        known = {field: family for family, field in INTERVAL_FIELDS.items()}
        updates: dict[str, str] = {}
        for field, expression in intervals.items():
            if field not in known:
                raise ValueError(f"Unknown scheduler interval: {field}")
            if expression:
                updates[known[field]] = validate_cron(expression)

        was_enabled = self.enabled
        self._intervals.update(updates)

        if enabled is not None and enabled != self.enabled:
            if enabled:
                self.start()
            else:
                self.stop()
        elif was_enabled and self.enabled and updates:
            self.stop()
            self.start()
        return self.get_status()

    def get_status(self) -> dict:
        status: dict = {"enabled": self.enabled}
        for family, field in INTERVAL_FIELDS.items():
            status[_camel(field)] = self._intervals[family]
        next_runs: dict[str, str | None] = {}
        if self._scheduler is not None:
            for job in self._scheduler.get_jobs():
                next_runs[job.id] = iso(job.next_run_time) if job.next_run_time else None
        status["nextRuns"] = next_runs
        status["runningJobs"] = sorted(next_runs)
        return status

    # ── Eligibility ──────────────────────────────────────────────────

    def eligible_servers(self) -> list[Server]:
        """Servers not syncing, or whose sync looks abandoned."""
        cutoff = utcnow() - timedelta(minutes=self._settings.sync_stale_minutes)
        with Session(self._engine) as session:
            return list(
                session.exec(
                    select(Server)
                    .where(
                        or_(
                            Server.sync_status != SyncStatus.SYNCING.value,
                            and_(
                                Server.sync_status == SyncStatus.SYNCING.value,
                                or_(
                                    col(Server.last_sync_started).is_(None),
                                    col(Server.last_sync_started) < cutoff,
                                ),
                            ),
                        )
                    )
                    .order_by(Server.id)
                ).all()
            )

    def eligible_embedding_servers(self) -> list[Server]:
        eligible = []
        for server in self.eligible_servers():
            if not server.auto_generate_embeddings:
                continue
            try:
                provider = EmbeddingProvider.normalize(server.embedding_provider)
            except ValueError:
                logger.warning(
                    "Server %s has unknown embedding provider %r",
                    server.name, server.embedding_provider,
                )
                continue
            if provider is None:
                continue
            if not server.embedding_base_url or not server.embedding_model:
                continue
            if provider.requires_api_key and not server.embedding_api_key:
                continue
            if self.remaining_items(server.id) <= 0:
                continue
            if self._queue.has_open_job(JobName.GENERATE_ITEM_EMBEDDINGS.value, server.id):
                continue
            eligible.append(server)
        return eligible

    def remaining_items(self, server_id: int) -> int:
        with Session(self._engine) as session:
            return session.exec(
                select(func.count())
                .select_from(Item)
                .where(Item.server_id == server_id)
                .where(Item.processed == False)  # noqa: E712
                .where(col(Item.type).in_(EMBEDDABLE_ITEM_TYPES))
            ).one()

    # ── Cron ticks ───────────────────────────────────────────────────

    def trigger_activity_sync(self) -> int:
        return self._enqueue_for_servers(
            "activity-sync",
            JobName.ACTIVITIES_SYNC,
            self.eligible_servers(),
            lambda server: activity_payload(server.id, DEFAULT_ACTIVITY_LIMIT),
            ACTIVITY_SYNC_OPTIONS,
        )

    def trigger_user_sync(self) -> int:
        return self._enqueue_for_servers(
            "user-sync",
            JobName.USERS_SYNC,
            self.eligible_servers(),
            lambda server: {"serverId": server.id},
            USER_SYNC_OPTIONS,
        )

    def trigger_recent_items_sync(self) -> int:
        limit = self._settings.recent_items_limit
        return self._enqueue_for_servers(
            "recent-items-sync",
            JobName.RECENT_ITEMS_SYNC,
            self.eligible_servers(),
            lambda server: recent_items_payload(server.id, limit),
            RECENT_ITEMS_SYNC_OPTIONS,
        )

    def trigger_people_sync(self) -> int:
        return self._enqueue_for_servers(
            "people-sync",
            JobName.PEOPLE_SYNC,
            self.eligible_servers(),
            lambda server: {"serverId": server.id},
            PEOPLE_SYNC_OPTIONS,
        )

    def trigger_full_sync(self) -> int:
        return self._enqueue_for_servers(
            "full-sync",
            JobName.FULL_SYNC,
            self.eligible_servers(),
            lambda server: {"serverId": server.id},
            FULL_SYNC_OPTIONS,
        )

    def trigger_embeddings_sync(self) -> int:
        return self._enqueue_for_servers(
            "embeddings-sync",
            JobName.GENERATE_ITEM_EMBEDDINGS,
            self.eligible_embedding_servers(),
            embedding_payload,
            EMBEDDINGS_OPTIONS,
        )

    def trigger_job_cleanup(self) -> None:
        try:
            self._reconciler.run()
        except Exception:
            logger.error("Error during scheduled job cleanup", exc_info=True)

    def trigger_old_job_cleanup(self) -> None:
        try:
            self._reconciler.purge_old_results()
        except Exception:
            logger.error("Error during scheduled old job cleanup", exc_info=True)

    def _enqueue_for_servers(self, family, job_name, servers, build_payload, options) -> int:
        logger.info("SCHEDULER: trigger=%s serverCount=%d", family, len(servers))
        queued = 0
        for server in servers:
            try:
                job_id = self._queue.enqueue(
                    job_name.value,
                    build_payload(server),
                    singleton_key=f"{family}:{server.id}",
                    **options,
                )
            except Exception:
                logger.error(
                    "Failed to queue %s for server %s", family, server.name, exc_info=True
                )
                continue
            if job_id is None:
                logger.debug(
                    "SCHEDULER: skipped=%s server=%s reason=alreadyQueued", family, server.name
                )
                continue
            queued += 1
            logger.info(
                "SCHEDULER: queued=%s server=%s server_id=%s", family, server.name, server.id
            )
        return queued

    # ── On-demand single-server triggers ─────────────────────────────

    def trigger_server_activity_sync(
        self, server_id: int, limit: int = DEFAULT_ACTIVITY_LIMIT
    ) -> str | None:
        return self._enqueue_now(
            "activity sync", JobName.ACTIVITIES_SYNC,
            activity_payload(server_id, limit), ACTIVITY_SYNC_OPTIONS,
        )

    def trigger_server_user_sync(self, server_id: int) -> str | None:
        return self._enqueue_now(
            "user sync", JobName.USERS_SYNC, {"serverId": server_id}, USER_SYNC_OPTIONS,
        )

    def trigger_server_recent_items_sync(
        self, server_id: int, limit: int | None = None
    ) -> str | None:
        return self._enqueue_now(
            "recent items sync", JobName.RECENT_ITEMS_SYNC,
            recent_items_payload(server_id, limit or self._settings.recent_items_limit),
            RECENT_ITEMS_SYNC_OPTIONS,
        )

    def trigger_server_people_sync(self, server_id: int) -> str | None:
        return self._enqueue_now(
            "people sync", JobName.PEOPLE_SYNC, {"serverId": server_id}, PEOPLE_SYNC_OPTIONS,
        )

    def trigger_server_full_sync(self, server_id: int) -> str | None:
        return self._enqueue_now(
            "full sync", JobName.FULL_SYNC, {"serverId": server_id}, FULL_SYNC_OPTIONS,
        )

    def _enqueue_now(self, label, job_name, payload, options) -> str | None:
        try:
            job_id = self._queue.enqueue(job_name.value, payload, **options)
        except Exception:
            logger.error(
                "Failed to queue manual %s for server %s", label, payload["serverId"],
                exc_info=True,
            )
            raise
        logger.info("Manual %s queued for server %s (job %s)", label, payload["serverId"], job_id)
        return job_id


def activity_payload(server_id: int, limit: int) -> dict:
    return {"serverId": server_id, "options": {"activityOptions": {"limit": limit}}}


def recent_items_payload(server_id: int, limit: int) -> dict:
    return {"serverId": server_id, "options": {"itemOptions": {"recentItemsLimit": limit}}}


def embedding_payload(server: Server, manual_start: bool = False) -> dict:
    config = EmbeddingConfig(
        base_url=(server.embedding_base_url or "").rstrip("/"),
        model=server.embedding_model or "",
        dimensions=server.embedding_dimensions or 1536,
        api_key=server.embedding_api_key or None,
    )
    payload = {
        "serverId": server.id,
        "provider": server.embedding_provider,
        "config": config.to_payload(),
    }
    if manual_start:
        payload["manualStart"] = True
    return payload
