import datetime
import json
import logging
import os
import sqlite3
import threading
from typing import List, Dict, Any, Optional

from .config import (DATABASE_FILE, BACKUP_DIR, DB_CONNECTION_TIMEOUT, SUMMARY_TOP_CATEGORIES)
from .db_utils import get_optimized_connection, row_to_dict
from .exceptions import (NotInitialized, DuplicateKey, StorageWriteFailure, StorageQueryFailure,
                         BackupWriteFailure)
from .records import LogRecord

log = logging.getLogger("LogMonitor.Database")


RECORD_COLUMNS = ('id', 'timestamp', 'level', 'category', 'message', 'data', 'source', 'environment')


class LogStorage:
    """
    Durable store for log records and numeric metrics.

    Owns one SQLite connection for its whole lifetime. All methods are
    blocking; async callers run them on a single-worker executor so that the
    connection is never used from two threads at once. A lock guards it anyway.
    """

    def __init__(self, db_path: str = DATABASE_FILE, backup_dir: Optional[str] = BACKUP_DIR,
                 timeout: float = DB_CONNECTION_TIMEOUT):
        self.db_path = db_path
        self.backup_dir = backup_dir
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self.initialized = False

    def init_db(self):
        log.info("Connecting to database and checking schema...")
        log.info(f"Database path: {self.db_path}")
        conn = get_optimized_connection(self.db_path, timeout=self.timeout)
        cursor = conn.cursor()

        cursor.execute('PRAGMA journal_mode;')
        mode = cursor.fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        # --- Records Table ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS logs (
                id TEXT PRIMARY KEY,
                timestamp DATETIME NOT NULL,
                level TEXT NOT NULL DEFAULT 'INFO',
                category TEXT NOT NULL DEFAULT 'GENERAL',
                message TEXT NOT NULL,
                data TEXT,
                source TEXT NOT NULL DEFAULT 'unknown',
                environment TEXT NOT NULL DEFAULT 'development',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON logs (timestamp);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_logs_level ON logs (level);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_logs_category ON logs (category);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_logs_source ON logs (source);')

        # --- Metrics Table (numeric time series) ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME NOT NULL,
                metric_name TEXT NOT NULL,
                metric_value REAL NOT NULL,
                category TEXT,
                source TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_metrics_name_time ON metrics (metric_name, timestamp);')
        conn.commit()

        if self.backup_dir:
            try:
                os.makedirs(self.backup_dir, exist_ok=True)
            except OSError as e:
                log.warning(f"Could not create backup directory '{self.backup_dir}': {e}")

        self._conn = conn
        self.initialized = True
        log.info("Database schema is ready.")

    def _require_init(self) -> sqlite3.Connection:
        if not self.initialized or self._conn is None:
            raise NotInitialized("Log storage not initialized")
        return self._conn

    def store(self, record: LogRecord) -> Dict[str, Any]:
        """
        Inserts one record, then appends it to the category's mirror file.

        Raises:
            NotInitialized: before init_db() has completed
            DuplicateKey: the record id already exists
            StorageWriteFailure: any other database error
        """
        conn = self._require_init()
        params = (record.id, record.timestamp, record.level, record.category, record.message,
                  record.serialized_data(), record.source, record.environment)

        with self._lock:
            try:
                cursor = conn.execute(
                    f"INSERT INTO logs ({', '.join(RECORD_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)", params)
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                if 'UNIQUE' in str(e).upper():
                    log.error(f"Duplicate record id '{record.id}': {e}")
                    raise DuplicateKey(f"Record id '{record.id}' already stored") from e
                log.error(f"Failed to store record '{record.id}': {e}")
                raise StorageWriteFailure(str(e)) from e
            except sqlite3.Error as e:
                conn.rollback()
                log.error(f"Failed to store record '{record.id}': {e}")
                raise StorageWriteFailure(str(e)) from e
            changes = cursor.rowcount

        try:
            self._write_backup(record)
        except BackupWriteFailure as e:
            log.warning(f"File backup failed: {e}")

        return {'id': record.id, 'changes': changes}

    def _write_backup(self, record: LogRecord):
        if not self.backup_dir:
            return
        backup_file = os.path.join(self.backup_dir, f"{str(record.category).lower()}.log")
        try:
            with open(backup_file, 'a', encoding='utf-8') as f:
                f.write(f"{record.timestamp} [{record.level}] {record.message}\n")
        except Exception as e:
            # The row is already committed; nothing here may fail the store.
            raise BackupWriteFailure(f"{backup_file}: {e}") from e

    def store_metric(self, metric_name: str, metric_value: float, category: Optional[str] = None,
                     source: Optional[str] = None, timestamp: Optional[str] = None) -> int:
        conn = self._require_init()
        if timestamp is None:
            timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
        with self._lock:
            try:
                cursor = conn.execute(
                    "INSERT INTO metrics (timestamp, metric_name, metric_value, category, source) VALUES (?, ?, ?, ?, ?)",
                    (timestamp, metric_name, float(metric_value), category, source))
                conn.commit()
            except sqlite3.Error as e:
                log.error(f"Failed to store metric '{metric_name}': {e}")
                raise StorageWriteFailure(str(e)) from e
            return cursor.lastrowid

    def query(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Returns records matching every given filter, newest first.

        Supported filters: category, level, source (exact), since (inclusive
        lower bound on timestamp), search (substring of message or serialized
        data), limit and offset.
        """
        conn = self._require_init()
        filters = filters or {}

        sql = f"SELECT {', '.join(RECORD_COLUMNS)}, created_at FROM logs WHERE 1=1"
        params: List[Any] = []

        for column in ('category', 'level', 'source'):
            if filters.get(column):
                sql += f" AND {column} = ?"
                params.append(filters[column])

        if filters.get('since'):
            sql += " AND timestamp >= ?"
            params.append(filters['since'])

        if filters.get('search'):
            sql += " AND (message LIKE ? OR data LIKE ?)"
            pattern = f"%{filters['search']}%"
            params.extend([pattern, pattern])

        sql += " ORDER BY timestamp DESC, rowid DESC"

        try:
            limit = int(filters.get('limit') or 0)
            offset = int(filters.get('offset') or 0)
        except (TypeError, ValueError) as e:
            raise StorageQueryFailure(f"Invalid limit/offset: {e}") from e
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        if offset:
            # SQLite only accepts OFFSET after a LIMIT clause
            if not limit:
                sql += " LIMIT -1"
            sql += " OFFSET ?"
            params.append(offset)

        with self._lock:
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                log.error(f"Failed to query logs: {e}")
                raise StorageQueryFailure(str(e)) from e

        results = []
        for row in rows:
            item = row_to_dict(row)
            item['data'] = json.loads(item['data']) if item['data'] else None
            results.append(item)
        return results

    def get_summary(self) -> Dict[str, Any]:
        conn = self._require_init()
        with self._lock:
            try:
                totals = conn.execute("""
                    SELECT
                        COUNT(*) AS total,
                        COALESCE(SUM(CASE WHEN level = 'ERROR' THEN 1 ELSE 0 END), 0) AS errors,
                        COALESCE(SUM(CASE WHEN level = 'WARN' THEN 1 ELSE 0 END), 0) AS warnings,
                        COALESCE(SUM(CASE WHEN date(timestamp) = date('now') THEN 1 ELSE 0 END), 0) AS today
                    FROM logs
                """).fetchone()
                top = conn.execute(
                    "SELECT category, COUNT(*) AS count FROM logs GROUP BY category ORDER BY count DESC LIMIT ?",
                    (SUMMARY_TOP_CATEGORIES,)).fetchall()
            except sqlite3.Error as e:
                log.error(f"Failed to build summary: {e}")
                raise StorageQueryFailure(str(e)) from e

        summary = row_to_dict(totals)
        summary['top_categories'] = [row_to_dict(r) for r in top]
        return summary

    def get_category_counts(self) -> List[Dict[str, Any]]:
        conn = self._require_init()
        with self._lock:
            try:
                rows = conn.execute("""
                    SELECT
                        category,
                        COUNT(*) AS total,
                        COUNT(CASE WHEN level = 'ERROR' THEN 1 END) AS errors,
                        COUNT(CASE WHEN level = 'WARN' THEN 1 END) AS warnings,
                        COUNT(CASE WHEN date(timestamp) = date('now') THEN 1 END) AS today,
                        MAX(timestamp) AS last_timestamp
                    FROM logs
                    GROUP BY category
                    ORDER BY total DESC
                """).fetchall()
            except sqlite3.Error as e:
                log.error(f"Failed to get category counts: {e}")
                raise StorageQueryFailure(str(e)) from e
        return [row_to_dict(r) for r in rows]

    def get_stats(self) -> Dict[str, Any]:
        if not self.initialized or self._conn is None:
            return {'status': 'not_initialized'}

        try:
            st = os.stat(self.db_path)
        except OSError as e:
            log.warning(f"Could not stat database file '{self.db_path}': {e}")
            return {'status': 'connected', 'path': self.db_path}

        return {
            'status': 'connected',
            'database_size': f"{st.st_size / 1024 / 1024:.2f} MB",
            'database_size_bytes': st.st_size,
            'last_modified': datetime.datetime.fromtimestamp(st.st_mtime, datetime.timezone.utc).isoformat(),
            'path': self.db_path,
        }

    def close(self):
        """Flushes and closes the connection. Safe to call more than once."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
                self._conn.close()
                log.info("Database connection closed.")
            except sqlite3.Error as e:
                log.error(f"Error closing database: {e}")
            finally:
                self._conn = None
                self.initialized = False
