"""
Integration tests for the HTTP and WebSocket surface.
Runs the full application (storage, hub, pipeline) against a temporary database.
"""

import os

import pytest
from aiohttp.test_utils import TestClient, TestServer

from log_monitor.server import create_app


@pytest.fixture
async def client(tmp_path):
    settings = {
        "db_path": str(tmp_path / "db" / "logs.db"),
        "backup_dir": str(tmp_path / "mirror"),
        "analytics_interval": 3600,
    }
    app = create_app([], settings)
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
async def test_ingest_and_query(client):
    resp = await client.post("/api/logs", json={"message": "user signed in", "category": "AUTH", "level": "info"})
    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    record_id = body["id"]

    resp = await client.get("/api/logs", params={"category": "AUTH"})
    body = await resp.json()
    assert body["success"] is True
    assert body["count"] == 1
    assert body["records"][0]["id"] == record_id
    assert body["records"][0]["level"] == "INFO"
    assert body["records"][0]["environment"] == "development"


@pytest.mark.asyncio
async def test_ingest_writes_mirror_file(client):
    await client.post("/api/logs", json={"message": "slow query", "category": "DATABASE"})

    mirror = os.path.join(client.app["storage"].backup_dir, "database.log")
    with open(mirror) as f:
        assert f.read().rstrip().endswith("[INFO] slow query")


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"level": "ERROR"}, {"message": ""}, ["not", "an", "object"]])
async def test_ingest_rejects_invalid_records(client, payload):
    resp = await client.post("/api/logs", json=payload)

    assert resp.status == 400
    body = await resp.json()
    assert body["success"] is False


@pytest.mark.asyncio
async def test_ingest_rejects_malformed_json(client):
    resp = await client.post("/api/logs", data="{nope", headers={"Content-Type": "application/json"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_query_rejects_non_integer_limit(client):
    resp = await client.get("/api/logs", params={"limit": "many"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_analytics_endpoints(client):
    for level in ("ERROR", "WARN", "INFO"):
        await client.post("/api/logs", json={"message": f"{level} happened", "level": level, "category": "API"})

    summary = (await (await client.get("/api/analytics/summary")).json())["summary"]
    assert summary["total"] == 3
    assert summary["errors"] == 1
    assert summary["warnings"] == 1
    assert summary["today"] == 3
    assert summary["top_categories"] == [{"category": "API", "count": 3}]

    categories = (await (await client.get("/api/analytics/categories")).json())["categories"]
    assert categories[0]["category"] == "API"
    assert categories[0]["total"] == 3


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    body = await resp.json()

    assert body["status"] == "healthy"
    assert body["connections"] == 0
    assert body["database"]["status"] == "connected"
    assert body["uptime"] >= 0


@pytest.mark.asyncio
async def test_websocket_receives_live_records(client):
    ws = await client.ws_connect("/ws")
    try:
        welcome = await ws.receive_json(timeout=5)
        assert welcome["type"] == "welcome"

        await ws.send_json({"type": "subscribe_category", "category": "API"})
        await ws.send_json({"type": "ping"})
        pong = await ws.receive_json(timeout=5)
        assert pong["type"] == "pong"

        await client.post("/api/logs", json={"message": "GET /items", "category": "API"})

        received = [await ws.receive_json(timeout=5) for _ in range(3)]
        assert [m["type"] for m in received] == ["new_record", "category_record", "filtered_record"]
        assert received[0]["record"]["message"] == "GET /items"
    finally:
        await ws.close()


@pytest.mark.asyncio
async def test_websocket_request_recent_and_errors(client):
    await client.post("/api/logs", json={"message": "stored earlier", "level": "WARN"})

    ws = await client.ws_connect("/ws")
    try:
        await ws.receive_json(timeout=5)

        await ws.send_json({"type": "request_recent", "options": {"level": "WARN"}})
        recent = await ws.receive_json(timeout=5)
        assert recent["type"] == "recent_records"
        assert recent["count"] == 1
        assert recent["records"][0]["message"] == "stored earlier"

        await ws.send_str("not json")
        error = await ws.receive_json(timeout=5)
        assert error["type"] == "error"
        assert error["error_type"] == "invalid_request"

        await ws.send_json({"type": "fly"})
        error = await ws.receive_json(timeout=5)
        assert error["event"] == "fly"
    finally:
        await ws.close()


@pytest.mark.asyncio
async def test_ingest_with_non_string_category_is_stored_and_broadcast(client):
    ws = await client.ws_connect("/ws")
    try:
        await ws.receive_json(timeout=5)

        resp = await client.post("/api/logs", json={"message": "numeric category", "category": 5})
        assert resp.status == 200

        live = await ws.receive_json(timeout=5)
        assert live["type"] == "new_record"
        assert live["record"]["category"] == "5"
    finally:
        await ws.close()

    body = await (await client.get("/api/logs", params={"category": "5"})).json()
    assert body["count"] == 1
