"""Filesystem change notifications for the watch roots.

Wraps a watchdog observer. Raw events are filtered through the ignore rules,
translated to add/change/unlink and held back until the file has stopped
changing (write settling), so a half-written file is never reported.
"""

import logging
import os
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..config import WatchRoot
from .debounce import EventKind
from .ignore import IgnoreFilter
from .mapper import PathMapper

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEvent:
    """A local file was added, changed or removed."""

    path: Path
    kind: EventKind


class _WatchHandler(FileSystemEventHandler):
    """Forwards watchdog callbacks to the owning ChangeWatcher."""

    def __init__(self, watcher: "ChangeWatcher"):
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            self.watcher._handle(event)
        except Exception as e:
            # A failing callback would kill the observer thread
            self.watcher._report_error(e)


class ChangeWatcher:
    """Watches several root directories and emits settled FileEvents."""

    def __init__(
        self,
        roots: Sequence[WatchRoot],
        sink: Callable[[FileEvent], None],
        ignore_filter: Optional[IgnoreFilter] = None,
        settle_seconds: float = 1.0,
        poll_interval: float = 0.1,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        """Initialize the watcher.

        Args:
            roots: Watch roots; roots whose directory does not exist are skipped
            sink: Receives every settled event (called from watcher threads)
            ignore_filter: Filter applied to root-relative paths
            settle_seconds: How long a file must stay unchanged before its
                add/change event is emitted (0 emits immediately)
            poll_interval: How often settling files are re-checked
            on_error: Called with watch errors; they never stop the watcher
        """
        self.roots = list(roots)
        self.sink = sink
        self.ignore_filter = ignore_filter or IgnoreFilter()
        self.mapper = PathMapper(self.roots)
        self.settle_seconds = settle_seconds
        self.poll_interval = poll_interval
        self.on_error = on_error
        self._observer: Optional[Observer] = None
        self._settling: dict[Path, tuple[EventKind, Optional[tuple[int, int]], float]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._settle_thread: Optional[threading.Thread] = None

    @property
    def watched_roots(self) -> list[WatchRoot]:
        """Roots whose local directory exists."""
        return [r for r in self.roots if r.local_dir.is_dir()]

    def is_ignored(self, path: Path) -> bool:
        found = self.mapper.relative_path(path)
        if found is None:
            return False
        _, relative = found
        return bool(relative) and self.ignore_filter.is_ignored(relative)

    def start(self) -> None:
        """Schedule every existing root and start the observer."""
        self._stop.clear()
        self._observer = self._create_observer()
        self._observer.start()
        if self.settle_seconds > 0:
            self._settle_thread = threading.Thread(
                target=self._settle_loop, name="davsync-settle", daemon=True
            )
            self._settle_thread.start()

    def _create_observer(self) -> Observer:
        observer = Observer()
        handler = _WatchHandler(self)
        for root in self.watched_roots:
            observer.schedule(handler, str(root.local_dir), recursive=True)
            logger.debug("Watching %s", root.local_dir)
        return observer

    def stop(self) -> None:
        """Stop the observer and drop events that are still settling."""
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join(timeout=5)
            self._observer = None
        if self._settle_thread is not None:
            self._settle_thread.join(timeout=5)
            self._settle_thread = None
        with self._lock:
            self._settling.clear()

    def check_health(self) -> bool:
        """Restart the observer if its thread died.

        Returns:
            True if the observer was running
        """
        if self._stop.is_set() or self._observer is None:
            return True
        if self._observer.is_alive():
            return True
        self._report_error(RuntimeError("File watcher stopped unexpectedly, restarting"))
        self._observer = self._create_observer()
        self._observer.start()
        return False

    def _report_error(self, error: Exception) -> None:
        logger.debug("Watch error", exc_info=error)
        if self.on_error is not None:
            self.on_error(error)

    def _handle(self, event: FileSystemEvent) -> None:
        event_type = event.event_type
        src = Path(os.fsdecode(event.src_path))

        if event_type == "moved":
            dest = Path(os.fsdecode(event.dest_path))
            if event.is_directory:
                # Files inside a moved directory produce no events of their own
                for dirpath, _, filenames in os.walk(dest):
                    for name in filenames:
                        self._emit_change(Path(dirpath) / name, EventKind.ADD)
                return
            self._emit_unlink(src)
            self._emit_change(dest, EventKind.ADD)
            return

        if event.is_directory:
            return
        if event_type == "created":
            self._emit_change(src, EventKind.ADD)
        elif event_type == "modified":
            self._emit_change(src, EventKind.CHANGE)
        elif event_type == "deleted":
            self._emit_unlink(src)

    def _emit_unlink(self, path: Path) -> None:
        if self.is_ignored(path):
            return
        with self._lock:
            self._settling.pop(path, None)
        self.sink(FileEvent(path, EventKind.UNLINK))

    def _emit_change(self, path: Path, kind: EventKind) -> None:
        if self.is_ignored(path):
            return
        if self.settle_seconds <= 0:
            self.sink(FileEvent(path, kind))
            return
        with self._lock:
            previous = self._settling.get(path)
            if previous is not None and previous[0] == EventKind.ADD:
                kind = EventKind.ADD
            self._settling[path] = (kind, None, time.monotonic())

    @staticmethod
    def _signature(path: Path) -> Optional[tuple[int, int]]:
        try:
            stat = path.stat()
        except OSError:
            return None
        return stat.st_size, stat.st_mtime_ns

    def poll_settling(self, now: Optional[float] = None) -> list[FileEvent]:
        """Emit events for files whose size and mtime stopped changing.

        Args:
            now: Monotonic timestamp (defaults to ``time.monotonic()``)

        Returns:
            The events emitted by this poll
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            snapshot = list(self._settling.items())

        ready: list[FileEvent] = []
        for path, (kind, last_signature, stable_since) in snapshot:
            signature = self._signature(path)
            with self._lock:
                if self._settling.get(path) != (kind, last_signature, stable_since):
                    # A newer raw event arrived meanwhile
                    continue
                if signature is None:
                    # Gone again; the delete event handles it
                    del self._settling[path]
                    continue
                if signature != last_signature:
                    self._settling[path] = (kind, signature, now)
                    continue
                if now - stable_since < self.settle_seconds:
                    continue
                del self._settling[path]
            ready.append(FileEvent(path, kind))

        for event in ready:
            self.sink(event)
        return ready

    def _settle_loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll_settling()
            except Exception as e:
                self._report_error(e)
