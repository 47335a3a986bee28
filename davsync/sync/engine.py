"""Core sync engine: initial full sync and live mirroring."""

import logging
import queue
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from ..api import WebDAVClient
from ..config import SyncConfig
from ..exceptions import DavSyncConfigError, RemoteError, RemoteUnreachableError
from ..output import OutputFormatter
from .debounce import DebounceQueue, EventKind
from .ignore import IgnoreFilter
from .mapper import PathMapper
from .operations import (
    DeletionPropagator,
    RemoteDirectoryEnsurer,
    UploadPipeline,
    UploadResult,
)
from .scanner import DirectoryScanner, LocalFile
from .state import HashCache, SyncStats
from .watcher import ChangeWatcher, FileEvent

logger = logging.getLogger(__name__)

# How long the dispatch loop blocks waiting for an event
EVENT_POLL_SECONDS = 0.5

# Remote deletes run on this many worker threads
DELETE_WORKERS = 4


class EngineState(str, Enum):
    """Lifecycle of the live mirror."""

    STOPPED = "stopped"
    CONNECTING = "connecting"
    INITIAL_SYNCING = "initial-syncing"
    WATCHING = "watching"


class SyncEngine:
    """Mirrors the configured watch roots to the WebDAV store.

    The engine owns the hash cache, the statistics and the debounce queue.
    Filesystem events arrive on a single queue; the dispatch loop in
    :meth:`watch` consumes them until :meth:`request_stop` is called (for
    example from a signal handler).

    Examples:
        >>> engine = SyncEngine(load_config("config.json"))
        >>> engine.run()  # blocks until SIGINT/SIGTERM
    """

    def __init__(
        self,
        config: SyncConfig,
        client: Optional[WebDAVClient] = None,
        output: Optional[OutputFormatter] = None,
        watcher_factory: Optional[Callable[..., ChangeWatcher]] = None,
    ):
        """Initialize sync engine.

        Args:
            config: Effective configuration
            client: WebDAV client (created from the configuration if omitted)
            output: Output formatter for status lines
            watcher_factory: Creates the filesystem watcher (``ChangeWatcher``)
        """
        self.config = config
        self.client = client or WebDAVClient.from_config(config)
        self.output = output or OutputFormatter(verbose=config.verbose)
        self.watcher_factory = watcher_factory or ChangeWatcher

        self.ignore_filter = IgnoreFilter(config.ignore_patterns)
        self.mapper = PathMapper(config.watch_roots, config.remote_path)
        self.hash_cache = HashCache()
        self.stats = SyncStats()

        self.ensurer = RemoteDirectoryEnsurer(self.client, config.remote_path)
        self.pipeline = UploadPipeline(
            client=self.client,
            mapper=self.mapper,
            hash_cache=self.hash_cache,
            stats=self.stats,
            ensurer=self.ensurer,
            output=self.output,
        )
        self.propagator = DeletionPropagator(
            client=self.client,
            mapper=self.mapper,
            hash_cache=self.hash_cache,
            stats=self.stats,
            sync_delete=config.sync_delete,
            delete_retries=config.delete_retries,
            output=self.output,
        )
        self.debounce = DebounceQueue(
            upload=self.pipeline.maybe_upload,
            delete=self.submit_delete,
            delay=config.debounce_seconds,
        )

        self.events: "queue.Queue[FileEvent]" = queue.Queue()
        self.state = EngineState.STOPPED
        self._stop_event = threading.Event()
        self._watcher: Optional[ChangeWatcher] = None
        self._finished = False
        self.delete_pool = ThreadPoolExecutor(
            max_workers=DELETE_WORKERS, thread_name_prefix="davsync-delete"
        )

    # =========================
    # Lifecycle
    # =========================

    def run(self, install_signal_handlers: bool = True) -> None:
        """Probe the store, run the initial sync and watch until stopped.

        Raises:
            RemoteUnreachableError: If the WebDAV store cannot be reached
            DavSyncConfigError: If none of the watch directories exists
        """
        if install_signal_handlers:
            self.install_signal_handlers()
        self.print_banner()
        try:
            self.connect()
            if self.config.initial_sync:
                self.initial_sync()
            else:
                self.output.info("Initial sync disabled in configuration, skipping")
            if not self.stop_requested:
                self.watch()
        finally:
            self.shutdown()

    def print_banner(self) -> None:
        self.output.info("davsync real-time backup")
        self.output.info(f"WebDAV: {self.config.endpoint}")
        self.output.info("Watch directories:")
        for root in self.config.watch_roots:
            self.output.info(f"  - {root}")
        self.output.print("")

    def connect(self) -> None:
        """Check that the remote base path is reachable, creating it if absent.

        Raises:
            RemoteUnreachableError: If any remote call fails
        """
        self.state = EngineState.CONNECTING
        base = self.config.remote_path
        self.output.info("Testing WebDAV connection...")
        try:
            if not self.client.exists(base):
                RemoteDirectoryEnsurer(self.client, "/").ensure_directory(base)
                self.output.info(f"Created remote base directory: {base}")
        except RemoteError as e:
            self.state = EngineState.STOPPED
            self.output.error(f"WebDAV connection failed: {e}")
            raise RemoteUnreachableError(
                f"Cannot reach {self.config.endpoint}: {e}"
            ) from e
        self.output.success("WebDAV connection OK")

    def install_signal_handlers(self) -> None:
        """Stop the watch loop on SIGINT and SIGTERM."""
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, signal handlers not installed")
            return

        def handle_signal(signum: int, frame: Any) -> None:
            logger.debug("Received signal %d", signum)
            self.request_stop()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def request_stop(self) -> None:
        """Ask the dispatch loop to finish. Safe to call from signal handlers."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    # =========================
    # Initial Sync
    # =========================

    def collect_local_files(self) -> list[LocalFile]:
        """Walk every watch root and collect the files that take part in sync."""
        scanner = DirectoryScanner(
            ignore_filter=self.ignore_filter,
            on_error=self._on_scan_error,
        )
        all_files: list[LocalFile] = []
        for root in self.config.watch_roots:
            if not root.local_dir.is_dir():
                self.output.warning(
                    f"Directory does not exist, skipping: {root.local_dir}"
                )
                continue
            files = scanner.scan_local(root.local_dir)
            all_files.extend(files)
            self.output.info(f"{root.remote_prefix or '.'}: found {len(files)} file(s)")
        return all_files

    def _on_scan_error(self, directory: Path, error: OSError) -> None:
        self.stats.increment("errors")
        self.output.error(f"Cannot read directory {directory}: {error}")

    def initial_sync(self) -> dict:
        """Upload every non-ignored file once, one file at a time.

        Returns:
            Dictionary with counts per upload result
        """
        self.state = EngineState.INITIAL_SYNCING
        self.output.info("Starting initial full sync...")
        start = time.time()

        files = self.collect_local_files()
        total = len(files)
        self.output.info(f"{total} file(s) to check")

        results = {result.value: 0 for result in UploadResult}
        for index, local_file in enumerate(files, start=1):
            if self.stop_requested:
                self.output.warning("Initial sync interrupted")
                break
            result = self.pipeline.maybe_upload(local_file.path)
            results[result.value] += 1
            if index % self.config.progress_every == 0:
                self.output.info(f"Progress: {index}/{total}")

        logger.debug("Initial sync took %.2fs", time.time() - start)
        self.output.success("Initial sync complete")
        return results

    # =========================
    # Live Watching
    # =========================

    def dispatch(self, event: FileEvent) -> None:
        """Route one filesystem event to the debounce queue."""
        display = self._display_path(event.path)
        if event.kind == EventKind.ADD:
            self.output.info(f"New file: {display}")
        elif event.kind == EventKind.CHANGE:
            self.output.info(f"Modified: {display}")
        else:
            self.output.info(f"Deleted: {display}")
        self.debounce.on_local_event(event.path, event.kind)

    def submit_delete(self, path: Path) -> None:
        """Propagate a local deletion on a worker thread."""
        self.delete_pool.submit(self._delete, path)

    def _delete(self, path: Path) -> None:
        try:
            self.propagator.on_delete(path)
        except Exception:
            logger.exception("Unexpected error deleting %s", path)

    def _display_path(self, path: Path) -> str:
        found = self.mapper.relative_path(path)
        if found is None:
            return str(path)
        return found[1]

    def _on_watch_error(self, error: Exception) -> None:
        self.output.error(f"Watch error: {error}")

    def start_watcher(self) -> ChangeWatcher:
        """Create and start the filesystem watcher.

        Raises:
            DavSyncConfigError: If none of the watch directories exists
        """
        watcher = self.watcher_factory(
            roots=self.config.watch_roots,
            sink=self.events.put,
            ignore_filter=self.ignore_filter,
            settle_seconds=self.config.write_settle_ms / 1000.0,
            poll_interval=self.config.settle_poll_ms / 1000.0,
            on_error=self._on_watch_error,
        )
        if not watcher.watched_roots:
            raise DavSyncConfigError("None of the watch directories exists")
        watcher.start()
        self._watcher = watcher
        return watcher

    def watch(self) -> None:
        """Dispatch filesystem events until a stop is requested."""
        watcher = self.start_watcher()
        self.state = EngineState.WATCHING
        self.output.print("")
        self.output.info("Watching for file changes... (Ctrl+C to stop)")
        self.output.print("")

        interval = self.config.stats_interval
        next_stats = time.monotonic() + interval if interval else None
        try:
            while not self._stop_event.is_set():
                try:
                    event = self.events.get(timeout=EVENT_POLL_SECONDS)
                except queue.Empty:
                    event = None
                if event is not None:
                    self.dispatch(event)
                if next_stats is not None and time.monotonic() >= next_stats:
                    self.print_stats()
                    next_stats = time.monotonic() + interval
                watcher.check_health()
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Cancel pending uploads, stop the watcher and print final statistics.

        Only the first call has an effect.
        """
        if self._finished:
            return
        self._finished = True
        self.output.print("")
        self.output.info("Stopping...")
        discarded = self.debounce.cancel_all()
        if discarded:
            self.output.warning(f"{discarded} pending upload(s) discarded")
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        self.delete_pool.shutdown(wait=True)
        self.print_stats()
        self.client.close()
        self.state = EngineState.STOPPED

    def print_stats(self) -> None:
        self.output.print("")
        for line in self.stats.summary_lines():
            self.output.info(line)
