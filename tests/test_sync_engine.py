"""Tests for the sync engine."""

import os
import signal
import threading
from unittest.mock import Mock, patch

import pytest

from davsync.api import WebDAVClient
from davsync.config import SyncConfig, WatchRoot
from davsync.exceptions import (
    DavSyncConfigError,
    RemoteNetworkError,
    RemoteUnreachableError,
)
from davsync.output import OutputFormatter
from davsync.sync import EngineState, EventKind, FileEvent, SyncEngine


class FakeWatcher:
    """Stands in for ChangeWatcher: emits queued events, then stops the engine."""

    def __init__(self, engine, initial_events, **kwargs):
        self.engine = engine
        self.initial_events = initial_events
        self.kwargs = kwargs
        self.roots = kwargs["roots"]
        self.started = False
        self.stopped = False

    @property
    def watched_roots(self):
        return list(self.roots)

    def start(self):
        self.started = True
        for event in self.initial_events:
            self.kwargs["sink"](event)

    def stop(self):
        self.stopped = True

    def check_health(self):
        if self.engine.events.empty():
            self.engine.request_stop()
        return True


class TestSyncEngine:
    """Test SyncEngine functionality."""

    @pytest.fixture
    def mock_client(self):
        """Create a mock WebDAV client where every remote path exists."""
        client = Mock(spec=WebDAVClient)
        client.exists.return_value = True
        return client

    @pytest.fixture
    def mock_output(self):
        """Create a mock output formatter."""
        return Mock(spec=OutputFormatter)

    @pytest.fixture
    def data_dir(self, tmp_path):
        path = tmp_path / "data"
        path.mkdir()
        return path

    def make_config(self, data_dir, **overrides):
        values = {
            "url": "https://dav.example.com/dav",
            "remote_path": "/backup",
            "watch_roots": (WatchRoot(data_dir, "data"),),
            "write_settle_ms": 0,
        }
        values.update(overrides)
        return SyncConfig(**values)

    @pytest.fixture
    def engine(self, data_dir, mock_client, mock_output):
        return SyncEngine(self.make_config(data_dir), mock_client, mock_output)

    def test_create_sync_engine(self, engine, mock_client, mock_output):
        assert engine.client is mock_client
        assert engine.output is mock_output
        assert engine.state == EngineState.STOPPED
        assert engine.debounce.delay == 2.0

    def test_initial_sync_uploads_all_files(self, engine, mock_client, data_dir):
        """Test that the initial walk uploads every non-ignored file."""
        (data_dir / "sub").mkdir()
        (data_dir / "a.txt").write_text("a")
        (data_dir / "sub" / "b.txt").write_text("b")
        (data_dir / "default-user").mkdir()
        (data_dir / "default-user" / "s.json").write_text("{}")

        results = engine.initial_sync()

        assert results["uploaded"] == 2
        uploaded = {c.args[0] for c in mock_client.write_file.call_args_list}
        assert uploaded == {"/backup/data/a.txt", "/backup/data/sub/b.txt"}
        assert engine.stats.uploaded == 2

    def test_initial_sync_twice_skips_unchanged(self, engine, mock_client, data_dir):
        (data_dir / "a.txt").write_text("a")
        engine.initial_sync()
        results = engine.initial_sync()

        assert results["skipped"] == 1
        assert mock_client.write_file.call_count == 1

    def test_initial_sync_reports_progress(
        self, data_dir, mock_client, mock_output
    ):
        for name in ("a", "b", "c"):
            (data_dir / name).write_text(name)
        engine = SyncEngine(
            self.make_config(data_dir, progress_every=2), mock_client, mock_output
        )
        engine.initial_sync()

        infos = [c.args[0] for c in mock_output.info.call_args_list]
        assert "Progress: 2/3" in infos

    def test_initial_sync_missing_root_warns(
        self, data_dir, tmp_path, mock_client, mock_output
    ):
        """Test that a missing root is skipped and the others are synced."""
        (data_dir / "a.txt").write_text("a")
        config = self.make_config(
            data_dir,
            watch_roots=(
                WatchRoot(data_dir, "data"),
                WatchRoot(tmp_path / "missing", "config"),
            ),
        )
        engine = SyncEngine(config, mock_client, mock_output)

        assert engine.initial_sync()["uploaded"] == 1
        mock_output.warning.assert_called_once()

    def test_initial_sync_counts_unreadable_directory(self, engine, mock_output):
        denied = PermissionError("denied")
        with patch("davsync.sync.scanner.os.scandir", side_effect=denied):
            engine.initial_sync()

        assert engine.stats.errors == 1
        assert "denied" in mock_output.error.call_args.args[0]

    def test_initial_sync_stops_when_requested(self, engine, mock_client, data_dir):
        (data_dir / "a.txt").write_text("a")
        engine.request_stop()
        assert engine.initial_sync()["uploaded"] == 0
        mock_client.write_file.assert_not_called()

    def test_connect_ok(self, engine, mock_client):
        engine.connect()
        mock_client.exists.assert_called_once_with("/backup")
        mock_client.create_directory.assert_not_called()
        assert engine.state == EngineState.CONNECTING

    def test_connect_creates_missing_base(self, engine, mock_client):
        """Test that a missing remote base path is created."""
        mock_client.exists.return_value = False
        engine.connect()
        mock_client.create_directory.assert_called_once_with("/backup")

    def test_connect_unreachable(self, engine, mock_client):
        mock_client.exists.side_effect = RemoteNetworkError("connection refused")
        with pytest.raises(RemoteUnreachableError, match="connection refused"):
            engine.connect()
        assert engine.state == EngineState.STOPPED

    def test_dispatch_arms_debounce(self, engine, mock_output, data_dir):
        path = data_dir / "a.txt"
        engine.dispatch(FileEvent(path, EventKind.ADD))
        try:
            assert engine.debounce.is_pending(path)
            mock_output.info.assert_called_with("New file: a.txt")
        finally:
            engine.debounce.cancel_all()

    def test_dispatch_unlink_evicts_hash(self, engine, mock_client, data_dir):
        path = data_dir / "a.txt"
        engine.hash_cache.set(path, "abc")
        engine.dispatch(FileEvent(path, EventKind.UNLINK))
        engine.delete_pool.shutdown(wait=True)

        assert path not in engine.hash_cache
        mock_client.delete_file.assert_not_called()

    def test_dispatch_does_not_wait_for_remote_delete(
        self, data_dir, mock_client, mock_output
    ):
        """Test that a slow remote delete runs off the dispatch thread."""
        release = threading.Event()
        mock_client.exists.side_effect = lambda path: release.wait(5)
        engine = SyncEngine(
            self.make_config(data_dir, sync_delete=True), mock_client, mock_output
        )

        engine.dispatch(FileEvent(data_dir / "gone.txt", EventKind.UNLINK))
        mock_client.delete_file.assert_not_called()

        release.set()
        engine.delete_pool.shutdown(wait=True)
        mock_client.delete_file.assert_called_once_with("/backup/data/gone.txt")
        assert engine.stats.deleted == 1

    def test_start_watcher_without_roots(self, tmp_path, mock_client, mock_output):
        """Test that watching fails when no watch directory exists."""
        config = self.make_config(
            tmp_path, watch_roots=(WatchRoot(tmp_path / "missing", "data"),)
        )
        engine = SyncEngine(config, mock_client, mock_output)
        with pytest.raises(DavSyncConfigError, match="None of the watch directories"):
            engine.start_watcher()

    def test_watch_dispatches_and_shuts_down(self, engine, mock_client, mock_output, data_dir):
        """Test the dispatch loop, stop request and shutdown."""
        path = data_dir / "a.txt"
        watchers = []

        def factory(**kwargs):
            watcher = FakeWatcher(engine, [FileEvent(path, EventKind.CHANGE)], **kwargs)
            watchers.append(watcher)
            return watcher

        engine.watcher_factory = factory
        engine.watch()

        watcher = watchers[0]
        assert watcher.started and watcher.stopped
        assert watcher.kwargs["settle_seconds"] == 0
        assert engine.state == EngineState.STOPPED
        infos = [c.args[0] for c in mock_output.info.call_args_list]
        assert "Modified: a.txt" in infos
        assert "Statistics:" in infos
        # The debounced upload was still pending when the loop stopped
        mock_output.warning.assert_called_with("1 pending upload(s) discarded")
        mock_client.write_file.assert_not_called()
        mock_client.close.assert_called_once()

    def test_run_without_initial_sync(self, data_dir, mock_client, mock_output):
        (data_dir / "a.txt").write_text("a")
        engine = SyncEngine(
            self.make_config(data_dir, initial_sync=False), mock_client, mock_output
        )
        engine.watcher_factory = lambda **kwargs: FakeWatcher(engine, [], **kwargs)

        engine.run(install_signal_handlers=False)

        mock_client.write_file.assert_not_called()
        assert engine.state == EngineState.STOPPED

    def test_run_with_initial_sync(self, data_dir, mock_client, mock_output):
        (data_dir / "a.txt").write_text("a")
        engine = SyncEngine(self.make_config(data_dir), mock_client, mock_output)
        engine.watcher_factory = lambda **kwargs: FakeWatcher(engine, [], **kwargs)

        engine.run(install_signal_handlers=False)

        mock_client.write_file.assert_called_once()
        assert engine.stats.uploaded == 1

    def test_run_closes_client_when_unreachable(self, engine, mock_client, mock_output):
        mock_client.exists.side_effect = RemoteNetworkError("connection refused")
        with pytest.raises(RemoteUnreachableError):
            engine.run(install_signal_handlers=False)
        mock_client.close.assert_called_once()


class TestSignalHandling:
    """Signals stop the engine cleanly, including during the initial sync."""

    @pytest.fixture(autouse=True)
    def restore_handlers(self):
        saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        yield
        for sig, handler in saved.items():
            signal.signal(sig, handler)

    @pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
    def test_signal_during_initial_sync(self, tmp_path, signum):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        for name in ("a.txt", "b.txt", "c.txt"):
            (data_dir / name).write_text(name)
        client = Mock(spec=WebDAVClient)
        client.exists.return_value = True
        client.write_file.side_effect = lambda *args, **kwargs: os.kill(os.getpid(), signum)
        output = Mock(spec=OutputFormatter)
        watcher_factory = Mock()
        config = SyncConfig(
            url="https://dav.example.com/dav",
            remote_path="/backup",
            watch_roots=(WatchRoot(data_dir, "data"),),
        )
        engine = SyncEngine(config, client, output, watcher_factory=watcher_factory)

        engine.run()

        assert client.write_file.call_count == 1
        watcher_factory.assert_not_called()
        output.warning.assert_any_call("Initial sync interrupted")
        infos = [c.args[0] for c in output.info.call_args_list]
        assert "Statistics:" in infos
        client.close.assert_called_once()
        assert engine.state == EngineState.STOPPED
