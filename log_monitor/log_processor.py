import json
import logging
import os
import re
from typing import Optional, Dict, Any

from .config import DEFAULT_LEVEL, DEFAULT_FILE_CATEGORY, DEFAULT_FILE_ENVIRONMENT, PROJECT_ROOT_MARKER
from .exceptions import ParseFailure
from .records import LogRecord, new_record_id, utc_now_iso

log = logging.getLogger("LogMonitor.LogProcessor")


# Matches "[2025-08-08T12:34:56]" and "[2025-08-08 12:34:56.123Z]"
TIMESTAMP_RE = re.compile(r'\[(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}[^\]]*)\]')
LEVEL_RE = re.compile(r'\[(DEBUG|INFO|WARN|ERROR|FATAL)\]', re.IGNORECASE)

# Ordered: the first rule whose keyword appears in the message wins.
CATEGORY_RULES = (
    ('AUTH', ('auth', 'login')),
    ('API', ('api', 'request')),
    ('DATABASE', ('database', 'db')),
)


def extract_source(file_path: str, marker: str = PROJECT_ROOT_MARKER) -> str:
    """
    Names the producing process from a log file path.
    '/home/u/GoPublic/camping/logs/app.log' -> 'camping'; without the marker
    directory the parent directory's base name is used.
    """
    parts = file_path.split('/')
    if marker in parts:
        idx = parts.index(marker)
        if idx + 1 < len(parts) and parts[idx + 1]:
            return parts[idx + 1]
    return os.path.basename(os.path.dirname(file_path))


def infer_category(message: str, level: str) -> str:
    """Efficiently categorizes a message by keyword."""
    text = message.lower()
    if 'error' in text or level == 'ERROR':
        return 'ERROR'
    for category, keywords in CATEGORY_RULES:
        if any(keyword in text for keyword in keywords):
            return category
    return DEFAULT_FILE_CATEGORY


def _decode_structured(line: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, ValueError) as e:
        raise ParseFailure(str(e)) from e
    if not isinstance(parsed, dict):
        raise ParseFailure(f"Expected an object, got {type(parsed).__name__}")
    return parsed


def _structured_record(parsed: Dict[str, Any], raw_line: str, source: str) -> LogRecord:
    level = parsed.get('level') or DEFAULT_LEVEL
    message = parsed.get('message') or parsed.get('msg') or raw_line
    return LogRecord(
        id=new_record_id(),
        timestamp=str(parsed.get('timestamp') or utc_now_iso()),
        level=str(level).upper(),
        category=str(parsed.get('category') or DEFAULT_FILE_CATEGORY),
        message=str(message),
        data=parsed.get('data'),
        source=source,
        environment=DEFAULT_FILE_ENVIRONMENT,
    )


def parse_log_line(line: str, source: str) -> Optional[LogRecord]:
    """
    Parses a single log line into a LogRecord, or None if the line produces none.

    Structured (JSON object) lines are tried first; anything else, including
    JSON that fails to decode, goes through the bracketed timestamp/level
    patterns and keyword category inference.
    """
    if not line or not line.strip():
        return None
    line = line.strip()

    if line.startswith('{'):
        try:
            return _structured_record(_decode_structured(line), line, source)
        except ParseFailure:
            log.debug("Line looked structured but did not decode, using pattern parsing")

    message = line
    level = DEFAULT_LEVEL

    timestamp_match = TIMESTAMP_RE.search(line)
    if timestamp_match:
        message = message.replace(timestamp_match.group(0), '', 1).strip()

    level_match = LEVEL_RE.search(line)
    if level_match:
        level = level_match.group(1).upper()
        message = message.replace(level_match.group(0), '', 1).strip()

    if not message:
        return None

    return LogRecord(
        id=new_record_id(),
        timestamp=timestamp_match.group(1) if timestamp_match else utc_now_iso(),
        level=level,
        category=infer_category(message, level),
        message=message,
        data=None,
        source=source,
        environment=DEFAULT_FILE_ENVIRONMENT,
    )
