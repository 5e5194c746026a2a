"""
Error taxonomy for the ingestion and distribution core.

Parse and backup failures never leave their module. Storage failures always
reach whoever asked for the operation.
"""


class LogMonitorError(Exception):
    """Base class for all errors raised by log_monitor."""


class NotInitialized(LogMonitorError):
    """A storage operation was invoked before the schema was set up."""


class StorageError(LogMonitorError):
    """The system of record could not complete an operation."""


class StorageWriteFailure(StorageError):
    pass


class StorageQueryFailure(StorageError):
    pass


class DuplicateKey(StorageWriteFailure):
    """A record id was stored twice. Indicates broken id generation."""


class WatchSetupFailure(LogMonitorError):
    """One watched path could not be prepared or monitored."""


class ParseFailure(LogMonitorError):
    """A line that looked structured could not be decoded."""


class BackupWriteFailure(LogMonitorError):
    """Appending to a mirror file failed."""


class InvalidRecord(LogMonitorError, ValueError):
    """A submitted record cannot be completed (no message)."""
