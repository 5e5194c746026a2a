"""
Database Utilities

Connection setup for the single shared SQLite handle used by the
persistent store.
"""

import logging
import os
import sqlite3
from typing import Any, Dict

log = logging.getLogger("LogMonitor.DbUtils")


def get_optimized_connection(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """
    Create an SQLite connection with recommended settings for a long-lived
    handle that is shared by an executor thread and the event loop thread.

    Args:
        db_path: Path to database file (parent directories are created)
        timeout: Busy timeout in seconds

    Returns:
        Configured SQLite connection with sqlite3.Row rows
    """
    directory = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(directory, exist_ok=True)

    # Access is serialized by the owner, so the handle may cross threads.
    conn = sqlite3.connect(db_path, timeout=timeout, detect_types=0, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    cursor = conn.cursor()

    # WAL mode for better read concurrency (persistent setting)
    cursor.execute("PRAGMA journal_mode=WAL;")

    # Synchronous mode: NORMAL is a good balance (FULL is too slow, OFF is risky)
    cursor.execute("PRAGMA synchronous=NORMAL;")

    # Use memory for temp store (faster)
    cursor.execute("PRAGMA temp_store=MEMORY;")

    # Set busy timeout at connection level as well
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")

    log.debug(f"Created SQLite connection to {db_path} (timeout={timeout}s)")

    return conn


def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}
