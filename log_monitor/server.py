import json
import logging
import time
from typing import Any, Dict, List

import aiohttp
from aiohttp import web

from .config import SERVER_HOST, SERVER_PORT, WEBSOCKET_HEARTBEAT_SECONDS, QUERY_DEFAULT_LIMIT
from .exceptions import InvalidRecord, LogMonitorError
from .records import utc_now_iso
from .tasks import start_background_tasks, cleanup_background_tasks

log = logging.getLogger("LogMonitor.Server")


def _int_param(request: web.Request, name: str, default: int) -> int:
    try:
        return int(request.query.get(name, default))
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=json.dumps({"success": False, "error": f"'{name}' must be an integer"}),
                                 content_type="application/json")


async def handle_ingest(request):
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        return web.json_response({"success": False, "error": "Body must be a JSON object"}, status=400)

    try:
        record = await request.app["pipeline"].ingest(body)
    except InvalidRecord as e:
        return web.json_response({"success": False, "error": str(e)}, status=400)
    except LogMonitorError as e:
        log.error(f"Log storage error: {e}")
        return web.json_response({"success": False, "error": str(e)}, status=500)

    return web.json_response({"success": True, "id": record.id})


async def handle_query(request):
    filters = {
        "category": request.query.get("category"),
        "level": request.query.get("level"),
        "source": request.query.get("source"),
        "since": request.query.get("since"),
        "search": request.query.get("search"),
        "limit": _int_param(request, "limit", QUERY_DEFAULT_LIMIT),
        "offset": _int_param(request, "offset", 0),
    }
    try:
        result = await request.app["pipeline"].query(filters)
    except LogMonitorError as e:
        log.error(f"Log query error: {e}")
        return web.json_response({"success": False, "error": str(e)}, status=500)
    return web.json_response({"success": True, **result})


async def handle_summary(request):
    try:
        summary = await request.app["pipeline"].get_summary()
    except LogMonitorError as e:
        return web.json_response({"success": False, "error": str(e)}, status=500)
    return web.json_response({"success": True, "summary": summary})


async def handle_categories(request):
    try:
        categories = await request.app["pipeline"].get_category_counts()
    except LogMonitorError as e:
        return web.json_response({"success": False, "error": str(e)}, status=500)
    return web.json_response({"success": True, "categories": categories})


async def handle_health(request):
    app = request.app
    return web.json_response({
        "status": "healthy",
        "timestamp": utc_now_iso(),
        "uptime": time.time() - app["start_time"],
        "connections": app["hub"].get_stats()["connected_clients"],
        "database": app["pipeline"].get_stats(),
    })


async def websocket_handler(request):
    ws = web.WebSocketResponse(heartbeat=WEBSOCKET_HEARTBEAT_SECONDS)
    await ws.prepare(request)
    hub = request.app["hub"]
    connection_id = await hub.connect(ws)

    try:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    log.warning(f"Could not parse websocket message from {connection_id}")
                    await hub.send_to_connection(connection_id, "error", {
                        "error_type": "invalid_request", "message": "messages must be JSON"})
                    continue
                try:
                    await hub.handle_message(connection_id, data)
                except Exception:
                    log.error("Error handling websocket message:", exc_info=True)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                log.warning(f"WebSocket connection {connection_id} closed with exception {ws.exception()}")
    finally:
        hub.disconnect(connection_id)
    return ws


def create_app(watch_files: List[str], settings: Dict[str, Any] = None) -> web.Application:
    app = web.Application()
    app["watch_files"] = list(watch_files)
    for key, value in (settings or {}).items():
        app[key] = value
    app["start_time"] = time.time()

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(cleanup_background_tasks)
    app.router.add_get("/ws", websocket_handler)
    app.router.add_post("/api/logs", handle_ingest)
    app.router.add_get("/api/logs", handle_query)
    app.router.add_get("/api/analytics/summary", handle_summary)
    app.router.add_get("/api/analytics/categories", handle_categories)
    app.router.add_get("/health", handle_health)
    return app


def run_server(watch_files: List[str], settings: Dict[str, Any] = None,
               host: str = SERVER_HOST, port: int = SERVER_PORT):
    app = create_app(watch_files, settings)
    log.info(f"Server starting on http://{host}:{port}")
    log.info(f"Watching {len(watch_files)} log file(s)")
    web.run_app(app, host=host, port=port)
