import os

# --- Configuration ---
# The database file path.
# This is a relative path by default, so it will be created in the current
# working directory. It can be overridden with the LOG_MONITOR_DB_PATH
# environment variable or the --db command-line flag.
DATABASE_FILE = os.getenv('LOG_MONITOR_DB_PATH', os.path.join('storage', 'db', 'logs.db'))
# One plain-text mirror file per category is appended here on every store.
BACKUP_DIR = os.getenv('LOG_MONITOR_BACKUP_DIR', os.path.join('storage', 'logs'))

SERVER_HOST = os.getenv('LOG_MONITOR_HOST', "0.0.0.0")
SERVER_PORT = int(os.getenv('LOG_MONITOR_PORT', '7710'))

# --- File Watching ---
# The path segment after this directory names the producing project.
PROJECT_ROOT_MARKER = os.getenv('LOG_MONITOR_PROJECT_MARKER', 'GoPublic')
# Absolute paths, separated by os.pathsep.
WATCH_FILES = [p for p in os.getenv('LOG_MONITOR_WATCH_FILES', '').split(os.pathsep) if p]
TAIL_DEBOUNCE_SECONDS = 0.1  # Coalesce bursts of change notifications for one file

# --- Storage ---
DB_CONNECTION_TIMEOUT = 30.0  # sqlite busy timeout (seconds)
QUERY_DEFAULT_LIMIT = 100
SUMMARY_TOP_CATEGORIES = 10

# --- Live Distribution ---
RECENT_RECORDS_DEFAULT_LIMIT = 50
ANALYTICS_INTERVAL_SECONDS = 30
HEARTBEAT_INTERVAL_SECONDS = 60
WEBSOCKET_HEARTBEAT_SECONDS = 10

# --- Record Defaults ---
DEFAULT_LEVEL = 'INFO'
DEFAULT_INGEST_CATEGORY = 'GENERAL'  # HTTP ingestion path
DEFAULT_FILE_CATEGORY = 'SYSTEM'  # File tailing path
DEFAULT_INGEST_ENVIRONMENT = 'development'
DEFAULT_FILE_ENVIRONMENT = 'production'
DEFAULT_SOURCE = 'unknown'
SYSTEM_EVENT_SOURCE = 'logging-system'
