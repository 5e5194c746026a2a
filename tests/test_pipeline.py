from unittest.mock import AsyncMock, MagicMock

import pytest

from log_monitor.exceptions import InvalidRecord, NotInitialized, StorageWriteFailure
from log_monitor.hub import LogStreamHub
from log_monitor.pipeline import LogPipeline


@pytest.fixture
def hub(storage):
    return LogStreamHub(storage)


@pytest.fixture
def pipeline(storage, hub):
    return LogPipeline(storage, hub)


@pytest.mark.asyncio
async def test_ingest_applies_defaults_and_stores(pipeline, storage):
    record = await pipeline.ingest({"message": "cache warmed"})

    assert record.level == "INFO"
    assert record.category == "GENERAL"
    assert record.source == "unknown"
    assert record.environment == "development"

    stored = storage.query()
    assert [r["id"] for r in stored] == [record.id]


@pytest.mark.asyncio
async def test_ingest_rejects_missing_message(pipeline, storage, hub, make_ws):
    ws = make_ws()
    await hub.connect(ws)

    with pytest.raises(InvalidRecord):
        await pipeline.ingest({"level": "ERROR"})

    assert storage.query() == []
    assert ws.of_type("new_record") == []


@pytest.mark.asyncio
async def test_record_is_queryable_when_viewer_receives_it(pipeline, storage, hub):
    seen = []

    class QueryingWS:
        closed = False

        async def send_json(self, payload):
            if payload["type"] == "new_record":
                ids = [r["id"] for r in storage.query()]
                seen.append(payload["record"]["id"] in ids)

    await hub.connect(QueryingWS())
    await pipeline.ingest({"message": "first"})
    await pipeline.ingest({"message": "second"})

    assert seen == [True, True]


@pytest.mark.asyncio
async def test_storage_failure_propagates_and_nothing_is_broadcast(make_ws):
    storage = MagicMock()
    storage.store.side_effect = StorageWriteFailure("disk full")
    hub = LogStreamHub(storage)
    ws = make_ws()
    await hub.connect(ws)
    pipeline = LogPipeline(storage, hub)

    with pytest.raises(StorageWriteFailure):
        await pipeline.ingest({"message": "lost"})

    assert ws.of_type("new_record") == []


@pytest.mark.asyncio
async def test_handle_record_before_init_raises(tmp_path, make_record):
    from log_monitor.database import LogStorage

    storage = LogStorage(str(tmp_path / "logs.db"), None)
    hub = MagicMock()
    hub.broadcast = AsyncMock()
    pipeline = LogPipeline(storage, hub)

    with pytest.raises(NotInitialized):
        await pipeline.handle_record(make_record())
    hub.broadcast.assert_not_awaited()


@pytest.mark.asyncio
async def test_query_defaults_limit(pipeline, storage, make_record):
    for i in range(105):
        storage.store(make_record(message=f"m{i}"))

    result = await pipeline.query({})
    assert result["count"] == 100
    assert len(result["records"]) == 100

    result = await pipeline.query({"limit": 5, "offset": 100})
    assert result["count"] == 5


@pytest.mark.asyncio
async def test_analytics_passthrough(pipeline, storage, make_record):
    storage.store(make_record(level="WARN", category="DATABASE"))

    summary = await pipeline.get_summary()
    categories = await pipeline.get_category_counts()

    assert summary["warnings"] == 1
    assert categories[0]["category"] == "DATABASE"
    assert pipeline.get_stats()["status"] == "connected"
