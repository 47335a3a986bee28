"""Debouncing of filesystem change events before upload."""

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of local filesystem events."""

    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"


class DebounceQueue:
    """Collapses bursts of change events for a path into one upload.

    Every add/change event cancels the timer already armed for the path and
    arms a new one, so only the newest change is ever uploaded. Deletions
    cancel the pending timer and are handled immediately.

    Timers fire on their own threads; uploads for different paths therefore
    run concurrently and finish in any order.
    """

    def __init__(
        self,
        upload: Callable[[Path], Any],
        delete: Callable[[Path], Any],
        delay: float,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        """Initialize the debounce queue.

        Args:
            upload: Called with the path once its quiet period elapsed
            delete: Called with the path when it was removed locally
            delay: Quiet period in seconds
            timer_factory: Creates the per-path timers (``threading.Timer``)
        """
        self.upload = upload
        self.delete = delete
        self.delay = delay
        self._timer_factory = timer_factory
        self._pending: dict[Path, tuple[threading.Timer, object]] = {}
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, path: Union[str, Path]) -> bool:
        with self._lock:
            return Path(path) in self._pending

    def on_local_event(self, path: Union[str, Path], kind: Union[EventKind, str]) -> None:
        """Route a filesystem event.

        Args:
            path: Absolute local path
            kind: ``add``, ``change`` or ``unlink``
        """
        kind = EventKind(kind)
        path = Path(path)

        if kind == EventKind.UNLINK:
            self.cancel(path)
            self.delete(path)
            return

        token = object()
        timer = self._timer_factory(self.delay, self._fire, args=(path, token))
        timer.daemon = True
        with self._lock:
            previous = self._pending.pop(path, None)
            if previous is not None:
                previous[0].cancel()
                logger.debug("Re-armed upload timer for %s", path)
            self._pending[path] = (timer, token)
            # Start under the lock so _fire sees the new entry
            timer.start()

    def _fire(self, path: Path, token: object) -> None:
        with self._lock:
            entry = self._pending.get(path)
            if entry is None or entry[1] is not token:
                # Cancelled or superseded between expiry and this callback
                return
            del self._pending[path]
        try:
            self.upload(path)
        except Exception:
            logger.exception("Unexpected error uploading %s", path)

    def cancel(self, path: Union[str, Path]) -> bool:
        """Cancel the pending upload for ``path``.

        Returns:
            True if an upload was pending
        """
        with self._lock:
            entry = self._pending.pop(Path(path), None)
        if entry is None:
            return False
        entry[0].cancel()
        logger.debug("Cancelled pending upload for %s", path)
        return True

    def cancel_all(self) -> int:
        """Cancel every pending upload (shutdown).

        Returns:
            Number of cancelled uploads
        """
        with self._lock:
            timers = [timer for timer, _ in self._pending.values()]
            self._pending.clear()
        for timer in timers:
            timer.cancel()
        return len(timers)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until currently armed timers have fired or been cancelled."""
        with self._lock:
            timers = [timer for timer, _ in self._pending.values()]
        for timer in timers:
            timer.join(timeout)
