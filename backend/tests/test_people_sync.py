"""Tests for the people backfill job."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session, select

from mediasync.errors import MediaServerError
from mediasync.models.job_result import JobResult
from mediasync.models.media import Item, Library
from mediasync.services.people_sync import ITEM_IDS_PER_FETCH, PeopleSyncJob


def _people_for(item_ids: list[str]) -> list[dict]:
    return [
        {"Id": item_id, "People": [{"Id": "p1", "Name": "Sigourney Weaver", "Type": "Actor"}]}
        for item_id in item_ids
    ]


def _client(fetch=None) -> MagicMock:
    client = MagicMock()
    client.get_items_people = AsyncMock(side_effect=fetch or _people_for)
    return client


def _library(engine, server_id: int, library_id: str, collection_type: str | None) -> None:
    with Session(engine) as session:
        session.add(
            Library(id=library_id, server_id=server_id, name=library_id, collection_type=collection_type)
        )
        session.commit()


def _item(engine, item_id: str) -> Item:
    with Session(engine) as session:
        return session.get(Item, item_id)


def _results(engine, job_id: str) -> list[JobResult]:
    with Session(engine) as session:
        return list(
            session.exec(
                select(JobResult).where(JobResult.job_id == job_id).order_by(JobResult.id)
            ).all()
        )


@pytest.fixture(name="server_id")
def server_id_fixture(engine, make_server) -> int:
    server_id = make_server()
    _library(engine, server_id, "lib-movies", "movies")
    _library(engine, server_id, "lib-books", "books")
    return server_id


def _job(engine, result_log, settings, client) -> PeopleSyncJob:
    return PeopleSyncJob(engine, result_log, settings, client_factory=lambda server: client)


@pytest.mark.asyncio
async def test_backfills_people_in_chunks(engine, result_log, settings, server_id, make_items):
    ids = make_items(server_id, 45, library_id="lib-movies")
    client = _client()

    result = await _job(engine, result_log, settings, client).run("job-1", {"serverId": server_id})

    assert (result.processed, result.updated, result.errors, result.remaining) == (45, 45, 0, 0)
    sizes = [len(call.args[0]) for call in client.get_items_people.await_args_list]
    assert sizes == [ITEM_IDS_PER_FETCH, ITEM_IDS_PER_FETCH, 5]
    item = _item(engine, ids[0])
    assert item.people_synced is True
    assert json.loads(item.people_json)[0]["Name"] == "Sigourney Weaver"

    rows = _results(engine, "job-1")
    assert [r.status for r in rows] == ["processing", "completed"]
    assert json.loads(rows[-1].result_json)["processed"] == 45


@pytest.mark.asyncio
async def test_libraries_without_people_ignored(engine, result_log, settings, server_id, make_items):
    make_items(server_id, 3, library_id="lib-books")
    client = _client()

    result = await _job(engine, result_log, settings, client).run("job-2", {"serverId": server_id})

    assert result.processed == 0
    client.get_items_people.assert_not_awaited()


@pytest.mark.asyncio
async def test_items_without_people_marked_synced(engine, result_log, settings, server_id, make_items):
    ids = make_items(server_id, 2, library_id="lib-movies")
    client = _client(fetch=lambda item_ids: [])

    result = await _job(engine, result_log, settings, client).run("job-3", {"serverId": server_id})

    assert (result.processed, result.updated) == (2, 0)
    assert _item(engine, ids[0]).people_synced is True
    assert _item(engine, ids[0]).people_json is None


@pytest.mark.asyncio
async def test_changed_people_reset_embedding(engine, result_log, settings, server_id, make_items):
    (item_id,) = make_items(
        server_id, 1, library_id="lib-movies", processed=True, embedding_json="[0.1]"
    )

    await _job(engine, result_log, settings, _client()).run("job-4", {"serverId": server_id})

    item = _item(engine, item_id)
    assert item.processed is False
    assert item.embedding_json is None


@pytest.mark.asyncio
async def test_failed_chunk_counted_and_not_retried(engine, result_log, settings, server_id, make_items):
    make_items(server_id, 25, library_id="lib-movies")

    async def fetch(item_ids):
        if item_ids[0].endswith("0000"):
            raise MediaServerError(500, "Internal Server Error")
        return _people_for(item_ids)

    client = _client(fetch=fetch)
    result = await _job(engine, result_log, settings, client).run("job-5", {"serverId": server_id})

    assert (result.processed, result.errors, result.remaining) == (5, 1, 20)
    # The failed chunk is excluded from later batches of the same run
    assert client.get_items_people.await_count == 2
    assert _results(engine, "job-5")[-1].status == "completed"


@pytest.mark.asyncio
async def test_runtime_cap_leaves_remaining(engine, result_log, settings, server_id, make_items):
    settings.people_sync_max_runtime_seconds = 0
    make_items(server_id, 3, library_id="lib-movies")
    client = _client()

    result = await _job(engine, result_log, settings, client).run("job-6", {"serverId": server_id})

    assert (result.processed, result.remaining) == (0, 3)
    client.get_items_people.assert_not_awaited()


@pytest.mark.asyncio
async def test_heartbeat_rows(engine, result_log, settings, server_id, make_items):
    settings.heartbeat_interval_seconds = 0
    make_items(server_id, 30, library_id="lib-movies")

    await _job(engine, result_log, settings, _client()).run("job-7", {"serverId": server_id})

    rows = _results(engine, "job-7")
    beats = [json.loads(r.result_json) for r in rows[1:-1]]
    assert [b["processed"] for b in beats] == [20, 30]
    assert all("lastHeartbeat" in b for b in beats)


@pytest.mark.asyncio
async def test_missing_server_skipped(engine, result_log, settings):
    client = _client()
    result = await _job(engine, result_log, settings, client).run("job-8", {"serverId": 404})

    assert result.status == "skipped"
    assert _results(engine, "job-8")[-1].status == "completed"
    client.get_items_people.assert_not_awaited()


@pytest.mark.asyncio
async def test_unexpected_error_logged_and_raised(engine, result_log, settings, server_id, make_items):
    make_items(server_id, 1, library_id="lib-movies")
    client = _client()
    client.get_items_people.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await _job(engine, result_log, settings, client).run("job-9", {"serverId": server_id})

    row = _results(engine, "job-9")[-1]
    assert row.status == "failed"
    assert json.loads(row.result_json)["error"] == "boom"
