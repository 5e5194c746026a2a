import asyncio
import concurrent.futures
import logging

from .config import (
    DATABASE_FILE,
    BACKUP_DIR,
    ANALYTICS_INTERVAL_SECONDS,
    HEARTBEAT_INTERVAL_SECONDS,
    TAIL_DEBOUNCE_SECONDS,
)
from .database import LogStorage
from .file_tailer import FileTailer
from .hub import LogStreamHub
from .pipeline import LogPipeline

log = logging.getLogger("LogMonitor.Tasks")


async def analytics_broadcaster_task(app):
    """Periodically pushes summary and per-category counts to every viewer."""
    log.info("Analytics broadcaster task started.")
    while True:
        await asyncio.sleep(app.get("analytics_interval", ANALYTICS_INTERVAL_SECONDS))
        try:
            await app["hub"].broadcast_analytics()
        except Exception:
            log.error("Error in analytics_broadcaster_task:", exc_info=True)


async def debug_logger_task(app):
    log.info("Debug heartbeat task started.")
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
        hub_stats = app["hub"].get_stats()
        log.info(
            f"[HEARTBEAT] Clients: {hub_stats['connected_clients']}, Messages sent: {hub_stats['messages_sent']}, "
            f"Watched files: {len(app['tailer'].watched_paths)}"
        )


async def start_background_tasks(app):
    log.info("Starting background tasks...")
    loop = asyncio.get_running_loop()

    # One worker: the storage connection is only ever used from this thread.
    app["db_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    app["tasks"] = []

    storage = LogStorage(app.get("db_path", DATABASE_FILE), app.get("backup_dir", BACKUP_DIR))
    await loop.run_in_executor(app["db_executor"], storage.init_db)
    app["storage"] = storage

    app["hub"] = LogStreamHub(storage, app["db_executor"])
    app["pipeline"] = LogPipeline(storage, app["hub"], app["db_executor"])
    app["tailer"] = FileTailer(app["pipeline"].handle_record,
                               debounce_seconds=app.get("tail_debounce", TAIL_DEBOUNCE_SECONDS))

    watch_files = app.get("watch_files", [])
    if watch_files:
        app["tailer"].start_watching(watch_files)
    else:
        log.warning("No log files configured for watching. Only direct ingestion is available.")

    await app["hub"].broadcast_system_event("Log monitor started",
                                            {"watched_files": app["tailer"].watched_paths})

    app["tasks"].extend(
        [
            asyncio.create_task(analytics_broadcaster_task(app)),
            asyncio.create_task(debug_logger_task(app)),
        ]
    )
    log.info("Background tasks started.")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    if "hub" in app:
        await app["hub"].broadcast_system_event("Log monitor shutting down", {"stats": app["hub"].get_stats()})

    # Watchers go first so nothing is stored after the connection closes.
    if "tailer" in app:
        app["tailer"].stop_watching()

    if "storage" in app:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(app["db_executor"], app["storage"].close)

    if "db_executor" in app and app["db_executor"]:
        app["db_executor"].shutdown(wait=True)
        log.info("db_executor shut down.")
