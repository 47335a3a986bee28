"""Directory scanning utilities for sync operations."""

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .ignore import IgnoreFilter

logger = logging.getLogger(__name__)


@dataclass
class LocalFile:
    """Represents a local file found under a watch root."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Path relative to the watch root (forward slashes on all platforms)"""

    size: int
    """File size in bytes"""

    mtime: float
    """Last modification time (Unix timestamp)"""

    @classmethod
    def from_path(cls, file_path: Path, base_path: Path) -> "LocalFile":
        """Create LocalFile from a path.

        Args:
            file_path: Absolute path to the file
            base_path: Watch root for calculating the relative path

        Returns:
            LocalFile instance
        """
        stat = file_path.stat()
        return cls(
            path=file_path,
            relative_path=file_path.relative_to(base_path).as_posix(),
            size=stat.st_size,
            mtime=stat.st_mtime,
        )


class DirectoryScanner:
    """Walks local trees depth-first, pruning ignored directories.

    Ignored directories are never descended into. Unreadable directories are
    reported through ``on_error`` and skipped.

    Examples:
        >>> scanner = DirectoryScanner(IgnoreFilter(["_cache"]))
        >>> for f in scanner.iter_files(Path("/srv/app/data")):
        ...     print(f.relative_path)
    """

    def __init__(
        self,
        ignore_filter: Optional[IgnoreFilter] = None,
        on_error: Optional[Callable[[Path, OSError], None]] = None,
    ):
        """Initialize directory scanner.

        Args:
            ignore_filter: Filter applied to every entry's root-relative path
            on_error: Called with the directory and the error when a
                directory cannot be listed
        """
        self.ignore_filter = ignore_filter or IgnoreFilter()
        self.on_error = on_error

    def iter_files(self, root: Path) -> Iterator[LocalFile]:
        """Lazily yield every non-ignored regular file below ``root``.

        Args:
            root: Watch root directory

        Yields:
            LocalFile objects in depth-first order
        """
        stack: list[Path] = [root]
        while stack:
            directory = stack.pop()
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as e:
                logger.debug("Cannot list %s: %s", directory, e)
                if self.on_error is not None:
                    self.on_error(directory, e)
                continue

            subdirs: list[Path] = []
            for entry in entries:
                item = Path(entry.path)
                relative = item.relative_to(root).as_posix()
                if self.ignore_filter.is_ignored(relative):
                    logger.debug("Ignoring: %s", relative)
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        subdirs.append(item)
                    elif entry.is_file():
                        yield LocalFile.from_path(item, root)
                except OSError as e:
                    # Vanished or unreadable between listing and stat
                    logger.debug("Skipping %s: %s", item, e)
                    continue

            # Reverse so the alphabetically first subdirectory is walked first
            stack.extend(reversed(subdirs))

    def scan_local(self, root: Path) -> list[LocalFile]:
        """Collect every non-ignored file below ``root``."""
        return list(self.iter_files(root))
