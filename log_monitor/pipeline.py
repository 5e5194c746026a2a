import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import QUERY_DEFAULT_LIMIT
from .records import LogRecord, build_record

log = logging.getLogger("LogMonitor.Pipeline")


class LogPipeline:
    """
    Entry points used by the transport layer and the file tailer.

    Every record is stored before it is broadcast, so anything a viewer
    receives live is already visible to a query.
    """

    def __init__(self, storage, hub, executor=None):
        self.storage = storage
        self.hub = hub
        self._executor = executor

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def handle_record(self, record: LogRecord):
        """Persists then fans out one record. Storage errors propagate; nothing is broadcast then."""
        await self._run_blocking(self.storage.store, record)
        await self.hub.broadcast(record)

    async def ingest(self, candidate: Dict[str, Any]) -> LogRecord:
        """
        Completes a submitted record with defaults, stores and broadcasts it.

        Raises:
            InvalidRecord: the candidate has no message
            StorageError / NotInitialized: the record was not stored
        """
        record = build_record(candidate)
        await self.handle_record(record)
        log.info(f"[{record.level}] [{record.category}] {record.message}")
        return record

    async def query(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        filters = dict(filters or {})
        filters.setdefault('limit', QUERY_DEFAULT_LIMIT)
        records = await self._run_blocking(self.storage.query, filters)
        return {'records': records, 'count': len(records)}

    async def get_summary(self) -> Dict[str, Any]:
        return await self._run_blocking(self.storage.get_summary)

    async def get_category_counts(self) -> List[Dict[str, Any]]:
        return await self._run_blocking(self.storage.get_category_counts)

    def get_stats(self) -> Dict[str, Any]:
        return self.storage.get_stats()
