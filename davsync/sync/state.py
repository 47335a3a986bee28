"""In-memory sync state: content hash cache and running statistics.

Nothing here is persisted. After a restart the hash cache is empty, so the
first upload attempt for every path goes through to the remote store.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from ..utils import format_duration

logger = logging.getLogger(__name__)


class HashCache:
    """Last successfully synchronized content hash per local path.

    Accessed from the dispatch thread and from debounce timer threads, so
    every operation takes the internal lock.
    """

    def __init__(self) -> None:
        self._hashes: dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(path: Union[str, Path]) -> str:
        return str(path)

    def get(self, path: Union[str, Path]) -> Optional[str]:
        with self._lock:
            return self._hashes.get(self._key(path))

    def set(self, path: Union[str, Path], digest: str) -> None:
        with self._lock:
            self._hashes[self._key(path)] = digest

    def evict(self, path: Union[str, Path]) -> bool:
        """Remove the entry for ``path``.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            return self._hashes.pop(self._key(path), None) is not None

    def is_unchanged(self, path: Union[str, Path], digest: str) -> bool:
        """True if ``digest`` equals the cached hash for ``path``."""
        with self._lock:
            return self._hashes.get(self._key(path)) == digest

    def clear(self) -> None:
        with self._lock:
            self._hashes.clear()

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        with self._lock:
            return self._key(path) in self._hashes

    def __len__(self) -> int:
        with self._lock:
            return len(self._hashes)


@dataclass
class SyncStats:
    """Counters for the live mirror, reset only by a process restart."""

    uploaded: int = 0
    skipped: int = 0
    errors: int = 0
    deleted: int = 0
    start_time: float = field(default_factory=time.time)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def increment(self, counter: str, amount: int = 1) -> None:
        """Atomically add ``amount`` to a named counter."""
        if counter not in ("uploaded", "skipped", "errors", "deleted"):
            raise ValueError(f"Unknown counter: {counter}")
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    @property
    def runtime(self) -> float:
        """Seconds since the process started syncing."""
        return time.time() - self.start_time

    def to_dict(self) -> dict:
        """Snapshot of the counters."""
        with self._lock:
            return {
                "uploaded": self.uploaded,
                "skipped": self.skipped,
                "errors": self.errors,
                "deleted": self.deleted,
                "runtime": round(self.runtime, 1),
            }

    def summary_lines(self) -> list[str]:
        """Human-readable statistics block."""
        snapshot = self.to_dict()
        return [
            "Statistics:",
            f"  Runtime: {format_duration(snapshot['runtime'])}",
            f"  Uploaded: {snapshot['uploaded']} file(s)",
            f"  Skipped (unchanged): {snapshot['skipped']} file(s)",
            f"  Deleted remotely: {snapshot['deleted']} file(s)",
            f"  Errors: {snapshot['errors']}",
        ]


@dataclass
class RestoreStats:
    """Counters for one restore run."""

    downloaded: int = 0
    skipped: int = 0
    errors: int = 0
    start_time: float = field(default_factory=time.time)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def increment(self, counter: str, amount: int = 1) -> None:
        if counter not in ("downloaded", "skipped", "errors"):
            raise ValueError(f"Unknown counter: {counter}")
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    @property
    def duration(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "downloaded": self.downloaded,
                "skipped": self.skipped,
                "errors": self.errors,
                "duration": round(self.duration, 1),
            }

    def summary_lines(self) -> list[str]:
        snapshot = self.to_dict()
        return [
            "Restore complete:",
            f"  Downloaded: {snapshot['downloaded']} file(s)",
            f"  Skipped (local is newer): {snapshot['skipped']} file(s)",
            f"  Errors: {snapshot['errors']}",
            f"  Duration: {snapshot['duration']:.1f}s",
        ]
