"""Unit tests for the per-path debounce queue."""

import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from davsync.api import WebDAVClient
from davsync.config import WatchRoot
from davsync.output import OutputFormatter
from davsync.sync.debounce import DebounceQueue, EventKind
from davsync.sync.mapper import PathMapper
from davsync.sync.operations import UploadPipeline
from davsync.sync.state import HashCache, SyncStats


class FakeTimer:
    """Timer that only fires when the test says so."""

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def join(self, timeout=None):
        pass

    def fire(self):
        self.function(*self.args)


@pytest.fixture
def timers():
    return []


@pytest.fixture
def queue_with_fake_timers(timers):
    def factory(interval, function, args=()):
        timer = FakeTimer(interval, function, args)
        timers.append(timer)
        return timer

    return DebounceQueue(upload=Mock(), delete=Mock(), delay=2.0, timer_factory=factory)


class TestDebounceQueue:
    """Tests with manually fired timers."""

    def test_event_arms_daemon_timer(self, queue_with_fake_timers, timers):
        q = queue_with_fake_timers
        q.on_local_event("/data/a.txt", EventKind.ADD)

        assert len(timers) == 1
        assert timers[0].started
        assert timers[0].daemon
        assert timers[0].interval == 2.0
        assert q.is_pending("/data/a.txt")
        q.upload.assert_not_called()

    def test_burst_collapses_to_one_upload(self, queue_with_fake_timers, timers):
        """Test that a re-armed path uploads once, from the newest timer."""
        q = queue_with_fake_timers
        q.on_local_event("/data/a.txt", "change")
        q.on_local_event("/data/a.txt", "change")
        q.on_local_event("/data/a.txt", "change")

        assert [t.cancelled for t in timers] == [True, True, False]
        assert q.pending_count == 1

        # A superseded timer that fires anyway must not upload
        timers[0].fire()
        q.upload.assert_not_called()

        timers[2].fire()
        q.upload.assert_called_once_with(Path("/data/a.txt"))
        assert q.pending_count == 0

    def test_paths_are_independent(self, queue_with_fake_timers, timers):
        q = queue_with_fake_timers
        q.on_local_event("/data/a.txt", "add")
        q.on_local_event("/data/b.txt", "add")

        assert not any(t.cancelled for t in timers)
        timers[1].fire()
        timers[0].fire()
        assert [c.args[0] for c in q.upload.call_args_list] == [
            Path("/data/b.txt"),
            Path("/data/a.txt"),
        ]

    def test_unlink_cancels_and_deletes(self, queue_with_fake_timers, timers):
        """Test that a delete cancels the pending upload and runs immediately."""
        q = queue_with_fake_timers
        q.on_local_event("/data/a.txt", "change")
        q.on_local_event("/data/a.txt", "unlink")

        assert timers[0].cancelled
        q.delete.assert_called_once_with(Path("/data/a.txt"))
        timers[0].fire()
        q.upload.assert_not_called()
        assert len(timers) == 1

    def test_unlink_without_pending(self, queue_with_fake_timers):
        q = queue_with_fake_timers
        q.on_local_event("/data/a.txt", "unlink")
        q.delete.assert_called_once_with(Path("/data/a.txt"))

    def test_cancel_all(self, queue_with_fake_timers, timers):
        q = queue_with_fake_timers
        q.on_local_event("/data/a.txt", "add")
        q.on_local_event("/data/b.txt", "add")

        assert q.cancel_all() == 2
        assert all(t.cancelled for t in timers)
        assert q.pending_count == 0
        assert q.cancel_all() == 0

    def test_upload_exception_contained(self, queue_with_fake_timers, timers):
        """Test that an upload failure does not escape the timer thread."""
        q = queue_with_fake_timers
        q.upload.side_effect = RuntimeError("boom")
        q.on_local_event("/data/a.txt", "add")

        timers[0].fire()
        assert not q.is_pending("/data/a.txt")

    def test_invalid_kind(self, queue_with_fake_timers):
        with pytest.raises(ValueError):
            queue_with_fake_timers.on_local_event("/data/a.txt", "rename")


class TestDebounceWithRealTimers:
    """End-to-end debounce through the upload pipeline."""

    def test_rapid_writes_upload_final_content_once(self, tmp_path):
        """Two writes 50ms apart with a 200ms debounce upload once, newest bytes."""
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        client = Mock(spec=WebDAVClient)
        client.exists.return_value = True
        pipeline = UploadPipeline(
            client=client,
            mapper=PathMapper([WatchRoot(data_dir, "data")], "/backup"),
            hash_cache=HashCache(),
            stats=SyncStats(),
            output=Mock(spec=OutputFormatter),
        )
        q = DebounceQueue(upload=pipeline.maybe_upload, delete=Mock(), delay=0.2)
        path = data_dir / "f.txt"

        path.write_bytes(b"first")
        q.on_local_event(path, EventKind.ADD)
        time.sleep(0.05)
        path.write_bytes(b"second")
        q.on_local_event(path, EventKind.CHANGE)
        time.sleep(0.5)

        client.write_file.assert_called_once_with(
            "/backup/data/f.txt", b"second", overwrite=True
        )
        assert q.pending_count == 0

    def test_flush_waits_for_timers(self):
        upload = Mock()
        q = DebounceQueue(upload=upload, delete=Mock(), delay=0.05)
        q.on_local_event("/data/a.txt", "add")
        q.flush(timeout=2)
        upload.assert_called_once_with(Path("/data/a.txt"))
