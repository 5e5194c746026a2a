import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import TAIL_DEBOUNCE_SECONDS, PROJECT_ROOT_MARKER
from .exceptions import LogMonitorError, WatchSetupFailure
from .log_processor import parse_log_line, extract_source
from .records import LogRecord

log = logging.getLogger("LogMonitor.FileTailer")

RecordCallback = Callable[[LogRecord], Awaitable[None]]


@dataclass
class TailState:
    """In-memory bookkeeping for one watched file. Never persisted."""
    path: str
    source: str
    offset: int = 0
    pending: bytes = b''
    dirty: bool = False


def _read_range(path: str, start: int, end: int) -> bytes:
    with open(path, 'rb') as f:
        f.seek(start)
        return f.read(end - start)


class _ChangeHandler(FileSystemEventHandler):
    """Runs on the observer thread; only hands the path back to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, notify: Callable[[str], None]):
        super().__init__()
        self._loop = loop
        self._notify = notify

    def on_any_event(self, event):
        if event.is_directory:
            return
        for attr in ('src_path', 'dest_path'):
            changed = getattr(event, attr, None)
            if changed:
                path = os.path.abspath(os.fsdecode(changed))
                self._loop.call_soon_threadsafe(self._notify, path)


class FileTailer:
    """
    Tails a set of external log files and forwards every parsed record.

    Each file starts at its end-of-file size, so content written before
    watching began (or while the process was down) is not replayed. A
    notification only ever triggers a read of [offset, current size). A file
    that shrinks is treated as unchanged until it grows past the old offset.
    """

    def __init__(self, on_record: RecordCallback, debounce_seconds: float = TAIL_DEBOUNCE_SECONDS,
                 project_marker: str = PROJECT_ROOT_MARKER, observer_factory=Observer, read_executor=None):
        self._on_record = on_record
        self._debounce = debounce_seconds
        self._marker = project_marker
        self._observer_factory = observer_factory
        self._read_executor = read_executor
        self._states: Dict[str, TailState] = {}
        self._watches: Dict[str, object] = {}
        self._drains: Dict[str, asyncio.Task] = {}
        self._observer = None
        self._handler: Optional[_ChangeHandler] = None

    # --- State ---

    def track(self, path: str) -> TailState:
        """
        Creates the file (and parents) if absent and starts its Tail State
        at the current end of file.
        """
        path = os.path.abspath(path)
        try:
            if not os.path.exists(path):
                log.info(f"Creating log file: {path}")
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, 'ab'):
                    pass
            size = os.path.getsize(path)
        except OSError as e:
            raise WatchSetupFailure(f"{path}: {e}") from e

        state = TailState(path=path, source=extract_source(path, self._marker), offset=size)
        self._states[path] = state
        return state

    def get_state(self, path: str) -> Optional[TailState]:
        return self._states.get(os.path.abspath(path))

    @property
    def watched_paths(self) -> List[str]:
        return list(self._states.keys())

    @property
    def active_watch_count(self) -> int:
        return len(self._watches)

    # --- Watching ---

    def start_watching(self, paths: Iterable[str]) -> List[str]:
        """
        Begins monitoring every path. A path that cannot be watched is logged
        and skipped. Must be called from the event loop thread.

        Returns:
            The absolute paths that are now being watched.
        """
        paths = list(paths)
        loop = asyncio.get_running_loop()
        if self._observer is None:
            self._observer = self._observer_factory()
            self._handler = _ChangeHandler(loop, self.notify_change)
            self._observer.start()

        started = []
        for path in paths:
            try:
                state = self.track(path)
                self._watches[state.path] = self._observer.schedule(
                    self._handler, os.path.dirname(state.path), recursive=False)
                started.append(state.path)
                log.info(f"Watching: {os.path.basename(state.path)} (source '{state.source}', offset {state.offset})")
            except (WatchSetupFailure, OSError) as e:
                self._states.pop(os.path.abspath(path), None)
                log.error(f"Failed to watch file {path}: {e}")

        log.info(f"File watching active for {len(started)}/{len(paths)} files")
        return started

    def stop_watching(self):
        """Releases every OS watch handle and discards all Tail State. Idempotent."""
        if self._observer is not None:
            try:
                self._observer.unschedule_all()
                self._observer.stop()
                self._observer.join()
            except Exception:
                log.error("Error while stopping file observer", exc_info=True)
            self._observer = None
            self._handler = None
            log.info("All file watchers stopped")

        self._watches.clear()
        self._states.clear()
        # Drains still waiting on their debounce find no state and return.
        self._drains.clear()

    # --- Change processing ---

    def notify_change(self, path: str):
        """Debounced entry point for change notifications (event loop thread)."""
        state = self._states.get(path)
        if state is None:
            return
        drain = self._drains.get(path)
        # A finished drain may still be registered until its done callback runs.
        if drain is not None and not drain.done():
            state.dirty = True
            return
        task = asyncio.get_running_loop().create_task(self._drain(path))
        self._drains[path] = task
        task.add_done_callback(lambda t, p=path: self._drain_finished(p, t))

    def _drain_finished(self, path: str, task: asyncio.Task):
        if self._drains.get(path) is task:
            del self._drains[path]
        if not task.cancelled() and task.exception() is not None:
            log.error(f"Error processing file changes for {path}", exc_info=task.exception())

    async def _drain(self, path: str):
        while True:
            await asyncio.sleep(self._debounce)
            state = self._states.get(path)
            if state is None:
                return
            state.dirty = False
            await self.process_changes(path)
            if not state.dirty:
                return

    async def process_changes(self, path: str) -> int:
        """
        Reads whatever was appended since the last read and forwards each
        completed, non-blank line.

        Returns:
            Number of records forwarded.
        """
        path = os.path.abspath(path)
        state = self._states.get(path)
        if state is None:
            return 0

        try:
            size = os.path.getsize(path)
        except OSError as e:
            log.error(f"Error checking size of {path}: {e}")
            return 0

        if size <= state.offset:
            if size < state.offset:
                log.debug(f"{path} shrank below offset {state.offset} (size {size}), ignoring")
            return 0

        start = state.offset
        loop = asyncio.get_running_loop()
        try:
            chunk = await loop.run_in_executor(self._read_executor, _read_range, path, start, size)
        except OSError as e:
            log.error(f"Error reading {path}: {e}")
            return 0

        parts = (state.pending + chunk).split(b'\n')
        state.pending = parts.pop()
        state.offset = size

        forwarded = 0
        for raw in parts:
            line = raw.decode('utf-8', errors='replace').rstrip('\r')
            if not line.strip():
                continue
            try:
                record = parse_log_line(line, state.source)
                if record is None:
                    continue
                await self._on_record(record)
            except LogMonitorError as e:
                log.error(f"Failed to forward record from {state.source}: {e}")
                continue
            except Exception:
                # The offset has already moved past this batch; keep going with the next line.
                log.error(f"Unexpected error handling a line from {state.source}", exc_info=True)
                continue
            forwarded += 1
            log.debug(f"{state.source}: {record.level} - {record.message[:50]}")
        return forwarded
