"""
Shared fixtures for Log Stream Monitor tests.
"""

import datetime
from typing import Any, Dict, List

import pytest


class DummyWS:
    """
    Minimal async WebSocket-like stub recording every payload it is sent.
    """

    def __init__(self, closed: bool = False, raise_exc: BaseException = None):
        self.closed = closed
        self._raise_exc = raise_exc
        self.sent: List[Dict[str, Any]] = []

    async def send_json(self, payload):
        if self._raise_exc:
            raise self._raise_exc
        self.sent.append(payload)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [p for p in self.sent if p.get("type") == event_type]


@pytest.fixture
def make_ws():
    def factory(**kwargs):
        return DummyWS(**kwargs)
    return factory


@pytest.fixture
def storage(tmp_path):
    """Initialized LogStorage backed by a temporary database and mirror dir."""
    from log_monitor.database import LogStorage

    store = LogStorage(str(tmp_path / "db" / "logs.db"), str(tmp_path / "mirror"))
    store.init_db()
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def today_iso():
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@pytest.fixture
def make_record(today_iso):
    """Factory for LogRecords with sensible defaults."""
    from log_monitor.records import LogRecord, new_record_id

    def factory(**overrides):
        fields = {
            "id": new_record_id(),
            "timestamp": today_iso,
            "level": "INFO",
            "category": "API",
            "message": "request handled",
            "data": None,
            "source": "camping",
            "environment": "production",
        }
        fields.update(overrides)
        return LogRecord(**fields)

    return factory
