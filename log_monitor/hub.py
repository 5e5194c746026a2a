import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .config import RECENT_RECORDS_DEFAULT_LIMIT, SYSTEM_EVENT_SOURCE
from .exceptions import LogMonitorError
from .records import LogRecord, SubscriptionFilter, new_record_id, utc_now_iso
from .websocket_utils import safe_send_json, robust_broadcast

log = logging.getLogger("LogMonitor.Hub")

CATEGORY_ROOM_PREFIX = "category_"
LEVEL_ROOM_PREFIX = "level_"


@dataclass
class Subscription:
    """Live-viewer state for one connection. Owned by LogStreamHub only."""
    connection_id: str
    ws: Any
    filters: SubscriptionFilter = field(default_factory=SubscriptionFilter)
    rooms: Set[str] = field(default_factory=set)
    joined_at: str = field(default_factory=utc_now_iso)

    @property
    def categories(self) -> List[str]:
        return sorted(r[len(CATEGORY_ROOM_PREFIX):] for r in self.rooms if r.startswith(CATEGORY_ROOM_PREFIX))


class LogStreamHub:
    """
    Fans out newly stored records to live viewer connections.

    Two delivery paths run side by side: rooms (unconditional per category or
    level) and the per-connection filtered channel gated by each
    Subscription's filter predicate. Connections only need an async
    send_json(payload) and a `closed` attribute, as aiohttp's
    WebSocketResponse provides.
    """

    def __init__(self, storage, executor=None):
        self.storage = storage
        self._executor = executor
        self._subscriptions: Dict[str, Subscription] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._messages_sent = 0
        self._start_time = time.time()

    # --- Connection lifecycle ---

    async def connect(self, ws, connection_id: Optional[str] = None) -> str:
        connection_id = connection_id or uuid.uuid4().hex
        self._subscriptions[connection_id] = Subscription(connection_id=connection_id, ws=ws)
        log.info(f"Viewer connected: {connection_id}. Total clients: {len(self._subscriptions)}")

        await safe_send_json(ws, {
            "type": "welcome",
            "connection_id": connection_id,
            "timestamp": utc_now_iso(),
            "stats": self.get_stats(),
        })
        return connection_id

    def disconnect(self, connection_id: str):
        sub = self._subscriptions.pop(connection_id, None)
        if sub is None:
            return
        for room in sub.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
        sub.rooms.clear()
        log.info(f"Viewer disconnected: {connection_id}. Total clients: {len(self._subscriptions)}")

    @property
    def connection_ids(self) -> List[str]:
        return list(self._subscriptions.keys())

    def room_members(self, room: str) -> Set[str]:
        return set(self._rooms.get(room, ()))

    # --- Rooms ---

    def _join(self, connection_id: str, room: str) -> bool:
        sub = self._subscriptions.get(connection_id)
        if sub is None:
            return False
        sub.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)
        return True

    def _leave(self, connection_id: str, room: str) -> bool:
        sub = self._subscriptions.get(connection_id)
        if sub is None:
            return False
        sub.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        return True

    def subscribe_category(self, connection_id: str, category: str) -> bool:
        joined = self._join(connection_id, f"{CATEGORY_ROOM_PREFIX}{category}")
        if joined:
            log.info(f"Client {connection_id} subscribed to category: {category}")
        return joined

    def unsubscribe_category(self, connection_id: str, category: str) -> bool:
        left = self._leave(connection_id, f"{CATEGORY_ROOM_PREFIX}{category}")
        if left:
            log.info(f"Client {connection_id} unsubscribed from category: {category}")
        return left

    def subscribe_level(self, connection_id: str, level: str) -> bool:
        joined = self._join(connection_id, f"{LEVEL_ROOM_PREFIX}{level}")
        if joined:
            log.info(f"Client {connection_id} subscribed to level: {level}")
        return joined

    def unsubscribe_level(self, connection_id: str, level: str) -> bool:
        return self._leave(connection_id, f"{LEVEL_ROOM_PREFIX}{level}")

    # --- Filters ---

    def update_filters(self, connection_id: str, filters: Optional[Dict[str, Any]]) -> bool:
        """Replaces the connection's filter predicate wholesale."""
        sub = self._subscriptions.get(connection_id)
        if sub is None:
            return False
        sub.filters = SubscriptionFilter.from_dict(filters)
        log.info(f"Client {connection_id} updated filters: {filters}")
        return True

    # --- Requests answered to one connection ---

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def send_to_connection(self, connection_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        sub = self._subscriptions.get(connection_id)
        if sub is None:
            return False
        return await safe_send_json(sub.ws, {"type": event_type, **payload})

    async def request_recent(self, connection_id: str, options: Optional[Dict[str, Any]] = None):
        options = options or {}
        query = {
            'limit': options.get('limit') or RECENT_RECORDS_DEFAULT_LIMIT,
            'category': options.get('category'),
            'level': options.get('level'),
            'since': options.get('since'),
        }
        try:
            records = await self._run_blocking(self.storage.query, query)
        except LogMonitorError as e:
            log.error(f"Failed to send recent records: {e}")
            await self.send_to_connection(connection_id, "error", {
                "error_type": "recent_records_error", "message": str(e)})
            return

        await self.send_to_connection(connection_id, "recent_records", {
            "records": records,
            "count": len(records),
            "category": options.get('category'),
            "level": options.get('level'),
        })
        log.info(f"Sent {len(records)} recent records to {connection_id}")

    async def ping(self, connection_id: str):
        await self.send_to_connection(connection_id, "pong", {
            "timestamp": utc_now_iso(),
            "uptime": time.time() - self._start_time,
        })

    async def handle_message(self, connection_id: str, message: Dict[str, Any]):
        """Routes one named event forwarded by the transport layer."""
        msg_type = message.get("type") if isinstance(message, dict) else None

        if msg_type in ("subscribe_category", "unsubscribe_category"):
            category = message.get("category")
            if not isinstance(category, str) or not category:
                await self._send_invalid(connection_id, msg_type, "'category' is required")
                return
            if msg_type == "subscribe_category":
                self.subscribe_category(connection_id, category)
            else:
                self.unsubscribe_category(connection_id, category)

        elif msg_type in ("subscribe_level", "unsubscribe_level"):
            level = message.get("level")
            if not isinstance(level, str) or not level:
                await self._send_invalid(connection_id, msg_type, "'level' is required")
                return
            if msg_type == "subscribe_level":
                self.subscribe_level(connection_id, level.upper())
            else:
                self.unsubscribe_level(connection_id, level.upper())

        elif msg_type == "update_filters":
            filters = message.get("filters")
            if filters is not None and not isinstance(filters, dict):
                await self._send_invalid(connection_id, msg_type, "'filters' must be an object")
                return
            self.update_filters(connection_id, filters)

        elif msg_type == "request_recent":
            options = message.get("options")
            await self.request_recent(connection_id, options if isinstance(options, dict) else {})

        elif msg_type == "ping":
            await self.ping(connection_id)

        else:
            await self._send_invalid(connection_id, msg_type, "unknown event")

    async def _send_invalid(self, connection_id: str, msg_type, reason: str):
        log.debug(f"Rejected '{msg_type}' from {connection_id}: {reason}")
        await self.send_to_connection(connection_id, "error", {
            "error_type": "invalid_request", "event": msg_type, "message": reason})

    # --- Fan-out ---

    def _room_sockets(self, room: str) -> List[Any]:
        return [self._subscriptions[cid].ws for cid in self._rooms.get(room, ())
                if cid in self._subscriptions]

    async def broadcast(self, record: LogRecord):
        """
        Delivers one newly stored record: to everyone, to its category room,
        to its level room, then to each connection whose filter matches.
        """
        record_dict = record.to_dict()
        subscriptions = list(self._subscriptions.values())

        await robust_broadcast([s.ws for s in subscriptions], {"type": "new_record", "record": record_dict})
        await robust_broadcast(self._room_sockets(f"{CATEGORY_ROOM_PREFIX}{record.category}"),
                               {"type": "category_record", "record": record_dict})
        await robust_broadcast(self._room_sockets(f"{LEVEL_ROOM_PREFIX}{record.level}"),
                               {"type": "level_record", "record": record_dict})

        matching = [s.ws for s in subscriptions if s.filters.matches(record)]
        await robust_broadcast(matching, {"type": "filtered_record", "record": record_dict})

        self._messages_sent += 1

        if record.level == 'ERROR':
            log.info(f"ERROR broadcasted: {record.message}")

    async def broadcast_system_event(self, event: str, data: Optional[Dict[str, Any]] = None) -> LogRecord:
        record = LogRecord(
            id=new_record_id(),
            timestamp=utc_now_iso(),
            level='INFO',
            category='SYSTEM',
            message=event,
            data=data,
            source=SYSTEM_EVENT_SOURCE,
        )
        await self.broadcast(record)
        log.info(f"System event broadcasted: {event}")
        return record

    async def broadcast_analytics(self):
        try:
            summary = await self._run_blocking(self.storage.get_summary)
            categories = await self._run_blocking(self.storage.get_category_counts)
        except LogMonitorError as e:
            log.error(f"Failed to broadcast analytics: {e}")
            return

        await robust_broadcast([s.ws for s in self._subscriptions.values()], {
            "type": "analytics_update",
            "summary": summary,
            "categories": categories,
            "hub_stats": self.get_stats(),
            "timestamp": utc_now_iso(),
        })
        log.debug("Analytics broadcasted to all clients")

    # --- Stats ---

    def get_stats(self) -> Dict[str, Any]:
        uptime = time.time() - self._start_time
        minutes = uptime / 60
        return {
            "connected_clients": len(self._subscriptions),
            "messages_sent": self._messages_sent,
            "uptime": uptime,
            "avg_messages_per_minute": self._messages_sent / minutes if minutes > 0 else 0.0,
            "client_list": [
                {
                    "id": sub.connection_id,
                    "joined_at": sub.joined_at,
                    "subscriptions": sub.categories,
                    "has_filters": not sub.filters.is_empty(),
                }
                for sub in self._subscriptions.values()
            ],
        }
