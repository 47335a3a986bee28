"""Rebuilding local trees from the WebDAV store."""

import logging
import os
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..api import RemoteEntry, WebDAVClient
from ..config import WatchRoot
from ..exceptions import RemoteError
from ..output import OutputFormatter
from ..utils import DEFAULT_PROGRESS_EVERY, format_size
from .ignore import IgnoreFilter
from .mapper import PathMapper
from .state import RestoreStats

logger = logging.getLogger(__name__)


@dataclass
class RestoreTask:
    """A remote file that may need to be downloaded."""

    remote: RemoteEntry
    local_path: Path
    relative_path: str


@dataclass
class RestoreResult:
    """Outcome of a restore run."""

    nothing_to_restore: bool = False
    """The remote base path does not exist"""

    stats: RestoreStats = field(default_factory=RestoreStats)

    @property
    def ok(self) -> bool:
        return self.stats.errors == 0


class RestoreDownloader:
    """Mirrors remote trees into local directories.

    A local file is only replaced when the remote copy is newer: a local file
    whose mtime is at least the remote last-modified time is kept. Listing
    failures abandon only the affected subtree.
    """

    def __init__(
        self,
        client: WebDAVClient,
        ignore_filter: Optional[IgnoreFilter] = None,
        output: Optional[OutputFormatter] = None,
        concurrency: int = 1,
        progress_every: int = DEFAULT_PROGRESS_EVERY,
    ):
        """Initialize the restore downloader.

        Args:
            client: WebDAV client
            ignore_filter: Filter applied to root-relative paths
            output: Output formatter for status lines
            concurrency: Number of parallel downloads
            progress_every: Report progress every N downloaded files
        """
        self.client = client
        self.ignore_filter = ignore_filter or IgnoreFilter()
        self.output = output or OutputFormatter()
        self.concurrency = max(1, concurrency)
        self.progress_every = progress_every

    def restore_roots(
        self, roots: Sequence[WatchRoot], remote_base: str
    ) -> RestoreResult:
        """Restore every watch root from ``<remote_base>/<remote_prefix>``.

        Args:
            roots: Watch roots to rebuild
            remote_base: Remote base path

        Returns:
            RestoreResult; ``nothing_to_restore`` when the base path is absent
        """
        result = RestoreResult()
        if not self._probe(remote_base, result):
            return result

        mapper = PathMapper(roots, remote_base)
        tasks: list[RestoreTask] = []
        for root in roots:
            remote_dir = mapper.root_remote_path(root)
            if root.remote_prefix and not self._exists(remote_dir, result):
                self.output.info(f"No backup for {root.remote_prefix}/, skipping")
                continue
            self.output.info(f"Scanning {remote_dir} -> {root.local_dir}")
            self.collect(remote_dir, root, mapper, tasks, result.stats)

        self._download_all(tasks, result.stats)
        self._print_summary(result)
        return result

    def restore_tree(self, remote_base: str, local_base: Path) -> RestoreResult:
        """Restore a single remote directory into ``local_base``."""
        result = RestoreResult()
        if not self._probe(remote_base, result):
            return result

        root = WatchRoot(local_base, "")
        mapper = PathMapper([root], remote_base)
        tasks: list[RestoreTask] = []
        self.collect(mapper.remote_base, root, mapper, tasks, result.stats)
        self._download_all(tasks, result.stats)
        self._print_summary(result)
        return result

    def _probe(self, remote_base: str, result: RestoreResult) -> bool:
        self.output.info("Testing WebDAV connection...")
        if not self.client.exists(remote_base):
            self.output.warning(
                f"Remote backup directory {remote_base} does not exist. "
                "Nothing to restore."
            )
            result.nothing_to_restore = True
            return False
        self.output.success("WebDAV connection OK")
        return True

    def _exists(self, remote_dir: str, result: RestoreResult) -> bool:
        try:
            return self.client.exists(remote_dir)
        except RemoteError as e:
            result.stats.increment("errors")
            self.output.error(f"Cannot check {remote_dir}: {e}")
            return False

    def collect(
        self,
        remote_dir: str,
        root: WatchRoot,
        mapper: PathMapper,
        tasks: list[RestoreTask],
        stats: RestoreStats,
    ) -> None:
        """Recursively list ``remote_dir`` and queue its files.

        Args:
            remote_dir: Remote directory to list
            root: Watch root the files are restored into
            mapper: Path mapper translating remote entries to local paths
            tasks: Receives a RestoreTask per non-ignored file
            stats: Error counter for listing failures
        """
        try:
            entries = self.client.list_directory(remote_dir)
        except RemoteError as e:
            stats.increment("errors")
            self.output.error(f"Failed to list {remote_dir}: {e}")
            return

        for entry in sorted(entries, key=lambda e: e.name):
            if not entry.name or entry.name in (".", ".."):
                continue
            relative = mapper.remote_relative(entry.path, mapper.root_remote_path(root))
            local_path = mapper.to_local(entry.path, root)
            if not relative or local_path is None:
                logger.debug("Remote entry outside %s: %s", remote_dir, entry.path)
                continue
            if self.ignore_filter.is_ignored(relative):
                logger.debug("Ignoring remote entry: %s", relative)
                continue
            if entry.is_directory:
                self.collect(entry.path, root, mapper, tasks, stats)
            else:
                tasks.append(RestoreTask(entry, local_path, relative))

    @staticmethod
    def is_local_current(task: RestoreTask) -> bool:
        """True if the local file exists and is not older than the remote copy.

        With no remote timestamp an existing local file is kept.
        """
        try:
            local_mtime = task.local_path.stat().st_mtime
        except FileNotFoundError:
            return False
        remote_mtime = task.remote.last_modified
        if remote_mtime is None:
            return True
        return local_mtime >= remote_mtime

    def download(self, task: RestoreTask, stats: RestoreStats) -> bool:
        """Download one file unless the local copy is at least as new.

        Returns:
            True if the file was downloaded
        """
        try:
            if self.is_local_current(task):
                stats.increment("skipped")
                self.output.detail(f"Local copy is current, skipped: {task.relative_path}")
                return False
            data = self.client.read_file(task.remote.path)
            task.local_path.parent.mkdir(parents=True, exist_ok=True)
            task.local_path.write_bytes(data)
            if task.remote.last_modified is not None:
                # Keeps the next restore from downloading the same file again
                os.utime(
                    task.local_path,
                    (task.remote.last_modified, task.remote.last_modified),
                )
        except (RemoteError, OSError) as e:
            stats.increment("errors")
            self.output.error(f"Download failed: {task.relative_path}: {e}")
            return False

        stats.increment("downloaded")
        logger.debug(
            "Downloaded %s (%s) -> %s",
            task.remote.path,
            format_size(len(data)),
            task.local_path,
        )
        return True

    def _download_all(self, tasks: list[RestoreTask], stats: RestoreStats) -> None:
        total = len(tasks)
        if not total:
            self.output.info("No files found to restore")
            return
        self.output.info(f"Found {total} file(s), restoring...")

        done = 0
        if self.concurrency > 1 and total > 1:
            with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                futures = [executor.submit(self.download, task, stats) for task in tasks]
                for future in as_completed(futures):
                    future.result()
                    done += 1
                    if done % self.progress_every == 0:
                        self.output.info(f"Progress: {done}/{total}")
        else:
            for task in tasks:
                self.download(task, stats)
                done += 1
                if done % self.progress_every == 0:
                    self.output.info(f"Progress: {done}/{total}")

    def _print_summary(self, result: RestoreResult) -> None:
        self.output.print("")
        for line in result.stats.summary_lines():
            self.output.info(line)
