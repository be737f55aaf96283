"""Resumable embedding generation for catalog items.

One job run loops over batches of unprocessed Movie/Series items until none
are left, the operator disables auto mode, or the server's stop flag is set.
The stop flag lives on the server row so a stop request survives a worker
restart; it is polled between provider calls, never mid-request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from uuid import NAMESPACE_URL, uuid5

import httpx
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams
from sqlmodel import Session, col, select

from mediasync.config import Settings
from mediasync.errors import (
    DimensionMismatchError,
    EmbeddingProviderError,
    InvalidApiKeyError,
    QuotaExceededError,
    RateLimitError,
)
from mediasync.models.job_result import JobResultStatus
from mediasync.models.media import EMBEDDABLE_ITEM_TYPES, Item
from mediasync.models.server import EmbeddingProvider, Server
from mediasync.services.embedding_providers import (
    EmbeddingClient,
    EmbeddingConfig,
    build_embedding_client,
    translate_provider_error,
)
from mediasync.services.job_results import JobResultLog
from mediasync.utils.timeutil import iso, utcnow

logger = logging.getLogger(__name__)

JOB_NAME = "generate-item-embeddings"
COLLECTION_NAME = "media_items"
MAX_CAST = 15
MAX_CREW = 10
PUBLISH_PAGE_SIZE = 256

# Errors that end the run instead of being counted per item
_FATAL_PROVIDER_ERRORS = (
    RateLimitError,
    QuotaExceededError,
    InvalidApiKeyError,
    DimensionMismatchError,
)


# ── Text preparation ─────────────────────────────────────────────────


def _load_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if isinstance(value, dict):
        return list(value.values())
    return value if isinstance(value, list) else []


def prepare_text_for_embedding(item: Item, max_length: int = 8000) -> str:
    """Flatten an item's descriptive fields into one block of text.

    Returns "" when the item has nothing descriptive (no title, overview,
    genres, credits, ...). The type line alone does not count as content.
    """
    parts: list[str] = []
    if item.name:
        parts.append(f"Title: {item.name}")
    if item.original_title and item.original_title != item.name:
        parts.append(f"Original Title: {item.original_title}")
    if item.series_name:
        parts.append(f"Series: {item.series_name}")
    type_index = len(parts)
    if item.overview:
        parts.append(f"Overview: {item.overview}")

    genres = [g for g in _load_list(item.genres_json) if isinstance(g, str) and g]
    if genres:
        parts.append(f"Genres: {', '.join(genres)}")
    tags = [t for t in _load_list(item.tags_json) if isinstance(t, str) and t]
    if tags:
        parts.append(f"Tags: {', '.join(tags)}")
    if item.production_year:
        parts.append(f"Year: {item.production_year}")
    if item.premiere_date:
        parts.append(f"Premiere: {item.premiere_date.date().isoformat()}")
    if item.official_rating:
        parts.append(f"Rating: {item.official_rating}")
    if item.community_rating:
        parts.append(f"Community Rating: {item.community_rating}")
    if item.series_studio:
        parts.append(f"Studio: {item.series_studio}")
    if item.runtime_ticks:
        minutes = round(item.runtime_ticks / 10_000_000 / 60)
        if minutes > 0:
            parts.append(f"Runtime: {minutes} minutes")

    people = [p for p in _load_list(item.people_json) if isinstance(p, dict) and p.get("Name")]
    directors = [p["Name"] for p in people if p.get("Type") == "Director"]
    cast = [
        f"{p['Name']} as {p['Role']}" if p.get("Role") else p["Name"]
        for p in people
        if p.get("Type") == "Actor"
    ]
    crew = [
        f"{p['Name']} ({p.get('Type') or 'Crew'})"
        for p in people
        if p.get("Type") not in ("Director", "Actor")
    ]
    if directors:
        parts.append(f"Directors: {', '.join(directors)}")
    if cast:
        parts.append(f"Cast: {', '.join(cast[:MAX_CAST])}")
    if crew:
        parts.append(f"Crew: {', '.join(crew[:MAX_CREW])}")

    if not parts:
        return ""
    if item.type:
        parts.insert(type_index, f"Type: {item.type}")
    return "\n".join(parts)[:max_length]


# ── Collaborators ────────────────────────────────────────────────────


class StopFlagStore:
    """Per-server cooperative stop flag persisted on the server row."""

    def __init__(self, engine) -> None:
        self._engine = engine

    def should_stop(self, server_id: int) -> bool:
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            return bool(server and server.embedding_stop_requested)

    def request_stop(self, server_id: int) -> None:
        self._set(server_id, True)

    def clear(self, server_id: int) -> None:
        self._set(server_id, False)

    def _set(self, server_id: int, value: bool) -> None:
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            if server is None:
                return
            server.embedding_stop_requested = value
            session.add(server)
            session.commit()


class VectorIndex:
    """Qdrant collection holding item vectors, sized to the configured dimension.

    ``ensure_index`` remembers which dimensions were already provisioned in
    this process; the cache is an optimisation only, the Qdrant calls are
    idempotent.
    """

    def __init__(
        self,
        qdrant_client: QdrantClient | None,
        max_dimensions: int = 2000,
        collection: str = COLLECTION_NAME,
    ) -> None:
        self._qdrant = qdrant_client
        self._max_dimensions = max_dimensions
        self._collection = collection
        self._ensured: set[int] = set()
        self._lock = threading.Lock()

    @property
    def collection(self) -> str:
        return self._collection

    def is_ensured(self, dimensions: int) -> bool:
        with self._lock:
            return dimensions in self._ensured

    def clear_cache(self) -> None:
        with self._lock:
            self._ensured.clear()
        logger.info("Embedding index cache cleared")

    def ensure_index(self, dimensions: int) -> bool:
        """Make sure the collection exists with ``dimensions``-sized vectors.

        Returns True when vectors of this size can be written to the index.
        """
        if dimensions > self._max_dimensions:
            logger.info(
                "EMBEDDINGS_INDEX: dimensions=%d action=skip reason=exceedsMaxDimensions max=%d",
                dimensions, self._max_dimensions,
            )
            return False
        if self.is_ensured(dimensions):
            return True
        if self._qdrant is None:
            logger.info("EMBEDDINGS_INDEX: dimensions=%d action=skip reason=noVectorStore", dimensions)
            return False

        try:
            if self._qdrant.collection_exists(self._collection):
                info = self._qdrant.get_collection(self._collection)
                current = info.config.params.vectors.size
                if current == dimensions:
                    with self._lock:
                        self._ensured = {dimensions}
                    return True
                logger.info(
                    "EMBEDDINGS_INDEX: dimensions=%d action=dropExisting reason=dimensionMismatch existing=%s",
                    dimensions, current,
                )
                self._qdrant.delete_collection(self._collection)
            logger.info("EMBEDDINGS_INDEX: dimensions=%d action=create", dimensions)
            self._qdrant.create_collection(
                collection_name=self._collection,
                vectors_config=VectorParams(size=dimensions, distance=Distance.COSINE),
            )
        except Exception:
            logger.warning("Could not create embedding index", exc_info=True)
            return False

        with self._lock:
            # A collection only holds one size, so older entries are stale
            self._ensured = {dimensions}
        return True

    def upsert(self, server_id: int, rows: list[tuple[str, str | None, list[float]]]) -> int:
        if not rows or self._qdrant is None:
            return 0
        points = [
            PointStruct(
                id=str(uuid5(NAMESPACE_URL, f"{server_id}:{item_id}")),
                vector=vector,
                payload={"server_id": server_id, "item_id": item_id, "type": item_type},
            )
            for item_id, item_type, vector in rows
        ]
        self._qdrant.upsert(collection_name=self._collection, points=points)
        return len(points)


class RecommendationCacheNotifier:
    """Best-effort signal telling the web UI to drop cached recommendations."""

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def notify(self, server_id: int) -> bool:
        if not self._base_url:
            return False
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/api/revalidate-recommendations",
                    json={"serverId": server_id},
                )
                resp.raise_for_status()
        except Exception:
            logger.warning(
                "Failed to revalidate recommendations for server %s", server_id, exc_info=True
            )
            return False
        return True


class DimensionValidator:
    """Check vector length against the configured dimension.

    The first mismatch in a run raises; later ones return None so the run
    does not repeat the same error for every item.
    """

    def __init__(self, expected: int) -> None:
        self.expected = expected
        self.mismatch_seen = False

    def check(self, vector, item_id: str) -> list[float] | None:
        if not isinstance(vector, list) or not vector:
            logger.error("Invalid embedding for item %s", item_id)
            return None
        if len(vector) != self.expected:
            if not self.mismatch_seen:
                self.mismatch_seen = True
                raise DimensionMismatchError(len(vector), self.expected)
            return None
        return vector


# ── Worker ───────────────────────────────────────────────────────────


@dataclass
class EmbeddingRunResult:
    server_id: int
    provider: str | None
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    stopped: bool = False
    paused: bool = False

    def as_dict(self) -> dict:
        return {
            "serverId": self.server_id,
            "provider": self.provider,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "stopped": self.stopped,
            "paused": self.paused,
        }


@dataclass
class _RunState:
    job_id: str
    server_name: str
    started: float
    last_heartbeat: float
    failed_ids: set[str] = field(default_factory=set)
    handled: int = 0


class EmbeddingWorker:
    """Generate item embeddings for one server per job run."""

    def __init__(
        self,
        engine,
        result_log: JobResultLog,
        settings: Settings,
        index: VectorIndex,
        stop_flags: StopFlagStore | None = None,
        notifier: RecommendationCacheNotifier | None = None,
    ) -> None:
        self._engine = engine
        self._result_log = result_log
        self._settings = settings
        self._index = index
        self._stop_flags = stop_flags or StopFlagStore(engine)
        self._notifier = notifier or RecommendationCacheNotifier(settings.revalidate_url)

    async def run(self, job_id: str, payload: dict) -> EmbeddingRunResult:
        server_id = int(payload["serverId"])
        raw_provider = payload.get("provider")
        provider = (
            EmbeddingProvider.OPENAI_COMPATIBLE.value if raw_provider == "openai" else raw_provider
        )
        config = EmbeddingConfig.from_payload(payload.get("config") or {})
        manual_start = bool(payload.get("manualStart", False))
        result = EmbeddingRunResult(server_id=server_id, provider=provider)

        now = time.monotonic()
        state = _RunState(
            job_id=job_id,
            server_name=self._server_name(server_id),
            started=now,
            last_heartbeat=now,
        )

        try:
            client = build_embedding_client(
                provider, config, timeout=self._settings.embedding_request_timeout_seconds
            )
            logger.info(
                "EMBEDDINGS: server=%s server_id=%s action=start provider=%s model=%s",
                state.server_name, server_id, provider, config.model,
            )
            self._result_log.log(
                job_id, JOB_NAME, JobResultStatus.PROCESSING,
                {
                    "serverId": server_id,
                    "provider": provider,
                    "status": "starting",
                    "lastHeartbeat": iso(utcnow()),
                },
                0,
            )
            validator = DimensionValidator(config.dimensions)

            while True:
                if self._stop_flags.should_stop(server_id):
                    logger.info(
                        "EMBEDDINGS: server=%s server_id=%s action=stopped processed=%d",
                        state.server_name, server_id, result.processed,
                    )
                    result.stopped = True
                    break

                if not manual_start and not self._auto_enabled(server_id):
                    logger.info(
                        "EMBEDDINGS: server=%s server_id=%s action=paused reason=autoDisabled processed=%d",
                        state.server_name, server_id, result.processed,
                    )
                    result.paused = True
                    break

                batch = self._next_batch(server_id, state.failed_ids)
                if not batch:
                    logger.info(
                        "EMBEDDINGS: server=%s server_id=%s action=completed processed=%d skipped=%d errors=%d",
                        state.server_name, server_id,
                        result.processed, result.skipped, result.errors,
                    )
                    break

                self._heartbeat(state, result)

                if client.supports_batch:
                    stopped = await self._process_batched(client, batch, validator, result, state)
                else:
                    stopped = await self._process_per_item(client, batch, validator, result, state)
                if stopped:
                    result.stopped = True
                    break

            if result.processed > 0 and self._index.ensure_index(config.dimensions):
                self._publish_vectors(server_id, config.dimensions)

            if not result.stopped and result.processed > 0:
                if await self._notifier.notify(server_id):
                    logger.info(
                        "EMBEDDINGS: server=%s server_id=%s action=revalidatedCache",
                        state.server_name, server_id,
                    )

            self._result_log.log(
                job_id, JOB_NAME, JobResultStatus.COMPLETED,
                result.as_dict(), _elapsed_ms(state.started),
            )
            return result
        except Exception as exc:
            logger.exception(
                "EMBEDDINGS: server=%s server_id=%s action=failed", state.server_name, server_id
            )
            failed = result.as_dict()
            failed["error"] = str(exc)
            self._result_log.log(
                job_id, JOB_NAME, JobResultStatus.FAILED,
                failed, _elapsed_ms(state.started), error=exc,
            )
            raise
        finally:
            try:
                self._stop_flags.clear(server_id)
            except Exception:
                logger.warning("Failed to clear stop flag for server %s", server_id, exc_info=True)

    # ── Provider paths ───────────────────────────────────────────────

    async def _process_batched(
        self,
        client: EmbeddingClient,
        batch: list[Item],
        validator: DimensionValidator,
        result: EmbeddingRunResult,
        state: _RunState,
    ) -> bool:
        """Send the batch in sub-batches. Returns True if a stop was requested."""
        pending = self._skip_empty(batch, result)
        size = self._settings.embedding_api_batch_size
        delay = self._settings.embedding_batch_delay_ms / 1000

        for offset in range(0, len(pending), size):
            if self._stop_flags.should_stop(result.server_id):
                return True
            chunk = pending[offset:offset + size]
            try:
                vectors = await client.embed_batch([text for _, text in chunk])
            except _FATAL_PROVIDER_ERRORS:
                raise
            except Exception as exc:
                known = translate_provider_error(exc)
                if known is not None:
                    raise known from exc
                logger.error(
                    "EMBEDDINGS: server_id=%s action=batchError size=%d error=%s",
                    result.server_id, len(chunk), exc,
                )
                result.errors += len(chunk)
                state.failed_ids.update(item.id for item, _ in chunk)
            else:
                for (item, _), vector in zip(chunk, vectors):
                    self._store_vector(item, vector, validator, result, state)
            state.handled += len(chunk)
            await asyncio.sleep(delay)
        return False

    async def _process_per_item(
        self,
        client: EmbeddingClient,
        batch: list[Item],
        validator: DimensionValidator,
        result: EmbeddingRunResult,
        state: _RunState,
    ) -> bool:
        """One provider call per item. Returns True if a stop was requested."""
        delay = self._settings.embedding_item_delay_ms / 1000
        max_length = self._settings.embedding_max_text_length

        for item in batch:
            if state.handled % 10 == 0 and self._stop_flags.should_stop(result.server_id):
                return True
            state.handled += 1

            text = prepare_text_for_embedding(item, max_length)
            if not text.strip():
                self._mark_processed(item.id)
                result.skipped += 1
                continue

            try:
                vector = await client.embed_one(text)
            except _FATAL_PROVIDER_ERRORS:
                raise
            except Exception as exc:
                known = translate_provider_error(exc)
                if known is not None:
                    raise known from exc
                logger.error("Error embedding item %s: %s", item.id, exc)
                result.errors += 1
                state.failed_ids.add(item.id)
            else:
                self._store_vector(item, vector, validator, result, state)
            await asyncio.sleep(delay)
        return False

    # ── Helpers ──────────────────────────────────────────────────────

    def _skip_empty(self, batch: list[Item], result: EmbeddingRunResult) -> list[tuple[Item, str]]:
        """Mark items without descriptive text processed; return the rest with their text."""
        max_length = self._settings.embedding_max_text_length
        pending: list[tuple[Item, str]] = []
        for item in batch:
            text = prepare_text_for_embedding(item, max_length)
            if text.strip():
                pending.append((item, text))
            else:
                self._mark_processed(item.id)
                result.skipped += 1
        return pending

    def _store_vector(
        self,
        item: Item,
        vector,
        validator: DimensionValidator,
        result: EmbeddingRunResult,
        state: _RunState,
    ) -> None:
        checked = validator.check(vector, item.id)
        if checked is None:
            result.errors += 1
            state.failed_ids.add(item.id)
            return
        try:
            with Session(self._engine) as session:
                row = session.get(Item, item.id)
                if row is None:
                    result.errors += 1
                    return
                row.embedding_json = json.dumps(checked)
                row.processed = True
                session.add(row)
                session.commit()
        except Exception:
            logger.warning("Failed to store embedding for item %s", item.id, exc_info=True)
            result.errors += 1
            state.failed_ids.add(item.id)
            return
        result.processed += 1

    def _mark_processed(self, item_id: str) -> None:
        with Session(self._engine) as session:
            row = session.get(Item, item_id)
            if row is not None:
                row.processed = True
                session.add(row)
                session.commit()

    def _next_batch(self, server_id: int, exclude: set[str]) -> list[Item]:
        with Session(self._engine) as session:
            stmt = (
                select(Item)
                .where(Item.server_id == server_id)
                .where(Item.processed == False)  # noqa: E712
                .where(col(Item.type).in_(EMBEDDABLE_ITEM_TYPES))
                .order_by(Item.id)
                .limit(self._settings.embedding_fetch_batch_size)
            )
            if exclude:
                stmt = stmt.where(col(Item.id).notin_(list(exclude)))
            return list(session.exec(stmt).all())

    def _auto_enabled(self, server_id: int) -> bool:
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            return bool(server and server.auto_generate_embeddings)

    def _server_name(self, server_id: int) -> str:
        with Session(self._engine) as session:
            server = session.get(Server, server_id)
            return server.name if server else str(server_id)

    def _heartbeat(self, state: _RunState, result: EmbeddingRunResult) -> None:
        now = time.monotonic()
        if now - state.last_heartbeat <= self._settings.heartbeat_interval_seconds:
            return
        state.last_heartbeat = now
        logger.info(
            "EMBEDDINGS: server=%s server_id=%s action=heartbeat processed=%d skipped=%d errors=%d",
            state.server_name, result.server_id, result.processed, result.skipped, result.errors,
        )
        payload = result.as_dict()
        payload["lastHeartbeat"] = iso(utcnow())
        self._result_log.log(
            state.job_id, JOB_NAME, JobResultStatus.PROCESSING,
            payload, _elapsed_ms(state.started),
        )

    def _publish_vectors(self, server_id: int, dimensions: int) -> None:
        """Copy stored vectors of the configured size into the vector index."""
        last_id = ""
        published = 0
        try:
            while True:
                with Session(self._engine) as session:
                    rows = session.exec(
                        select(Item.id, Item.type, Item.embedding_json)
                        .where(Item.server_id == server_id)
                        .where(Item.embedding_json != None)  # noqa: E711
                        .where(Item.id > last_id)
                        .order_by(Item.id)
                        .limit(PUBLISH_PAGE_SIZE)
                    ).all()
                if not rows:
                    break
                page = []
                for item_id, item_type, raw in rows:
                    vector = json.loads(raw)
                    if len(vector) == dimensions:
                        page.append((item_id, item_type, vector))
                published += self._index.upsert(server_id, page)
                last_id = rows[-1][0]
        except Exception:
            logger.warning(
                "Failed to publish vectors for server %s", server_id, exc_info=True
            )
            return
        logger.info(
            "EMBEDDINGS_INDEX: server_id=%s action=published count=%d", server_id, published
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
