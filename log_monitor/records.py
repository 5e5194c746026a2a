import datetime
import json
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .config import (DEFAULT_LEVEL, DEFAULT_INGEST_CATEGORY, DEFAULT_INGEST_ENVIRONMENT,
                     DEFAULT_SOURCE)
from .exceptions import InvalidRecord

LEVELS = ('DEBUG', 'INFO', 'WARN', 'ERROR', 'FATAL')
CATEGORIES = ('API', 'AUTH', 'DATABASE', 'ERROR', 'SYSTEM', 'GENERAL')


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision, e.g. 2025-01-01T00:00:00.000Z."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def new_record_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class LogRecord:
    """One normalized log event. Immutable once created; corrections are new records."""
    id: str
    timestamp: str
    message: str
    level: str = DEFAULT_LEVEL
    category: str = DEFAULT_INGEST_CATEGORY
    data: Optional[Any] = None
    source: str = DEFAULT_SOURCE
    environment: str = DEFAULT_INGEST_ENVIRONMENT

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def serialized_data(self) -> Optional[str]:
        return json.dumps(self.data) if self.data is not None else None


def build_record(candidate: Dict[str, Any]) -> LogRecord:
    """
    Completes a submitted record with defaults for the ingestion entrypoint.

    Missing fields fall back to: a fresh uuid4 id, the current UTC time, INFO,
    GENERAL, source 'unknown' and environment 'development'. A submitted id is
    ignored so ids are always generated here.

    Raises:
        InvalidRecord: if the candidate carries no non-blank message.
    """
    if not isinstance(candidate, dict):
        raise InvalidRecord(f"Expected an object, got {type(candidate).__name__}")

    message = candidate.get('message')
    if not isinstance(message, str) or not message.strip():
        raise InvalidRecord("Record requires a non-empty 'message'")

    level = candidate.get('level') or DEFAULT_LEVEL
    return LogRecord(
        id=new_record_id(),
        timestamp=str(candidate.get('timestamp') or utc_now_iso()),
        level=str(level).upper(),
        category=str(candidate.get('category') or DEFAULT_INGEST_CATEGORY),
        message=message,
        data=candidate.get('data'),
        source=str(candidate.get('source') or DEFAULT_SOURCE),
        environment=str(candidate.get('environment') or DEFAULT_INGEST_ENVIRONMENT),
    )


@dataclass
class SubscriptionFilter:
    """
    Conjunctive match rule gating the per-connection filtered channel.
    Every unset part matches everything.
    """
    categories: List[str] = field(default_factory=list)
    levels: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    search: Optional[str] = None

    @classmethod
    def from_dict(cls, filters: Optional[Dict[str, Any]]) -> "SubscriptionFilter":
        if not filters:
            return cls()

        def as_list(value) -> List[str]:
            if not value:
                return []
            if isinstance(value, str):
                return [value]
            return [str(v) for v in value]

        search = filters.get('search')
        return cls(
            categories=as_list(filters.get('categories')),
            levels=as_list(filters.get('levels')),
            sources=as_list(filters.get('sources')),
            search=search if isinstance(search, str) else None,
        )

    def is_empty(self) -> bool:
        return not (self.categories or self.levels or self.sources or (self.search and self.search.strip()))

    def matches(self, record: LogRecord) -> bool:
        if self.categories and record.category not in self.categories:
            return False
        if self.levels and record.level not in self.levels:
            return False
        if self.sources and record.source not in self.sources:
            return False

        if self.search and self.search.strip():
            term = self.search.lower()
            data_str = (record.serialized_data() or '').lower()
            if term not in record.message.lower() and term not in data_str:
                return False

        return True
