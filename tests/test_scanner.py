"""Unit tests for the local directory scanner."""

import re
from unittest.mock import Mock

import pytest

from davsync.sync.ignore import IgnoreFilter
from davsync.sync.scanner import DirectoryScanner, LocalFile


@pytest.fixture
def tree(tmp_path):
    """Create a small watch root with ignored and reserved entries."""
    root = tmp_path / "data"
    files = [
        "a.txt",
        "sub/b.txt",
        "sub/deep/c.tmp",
        "sub/deep/d.json",
        "_cache/x.bin",
        "default-user/settings.json",
    ]
    for name in files:
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(name)
    return root


class TestDirectoryScanner:
    """Tests for DirectoryScanner."""

    def test_scan_applies_ignore_rules(self, tree):
        scanner = DirectoryScanner(IgnoreFilter(["_cache", re.compile(r"\.tmp$")]))
        found = [f.relative_path for f in scanner.scan_local(tree)]
        assert found == ["a.txt", "sub/b.txt", "sub/deep/d.json"]

    def test_reserved_directory_always_skipped(self, tree):
        """Test that the reserved directory is skipped with no patterns."""
        found = [f.relative_path for f in DirectoryScanner().scan_local(tree)]
        assert "default-user/settings.json" not in found
        assert "_cache/x.bin" in found

    def test_ignored_directories_are_pruned(self, tree):
        """Test that nothing below an ignored directory is visited."""
        ignore = Mock(wraps=IgnoreFilter(["_cache"]))
        list(DirectoryScanner(ignore).iter_files(tree))

        checked = [c.args[0] for c in ignore.is_ignored.call_args_list]
        assert "_cache" in checked
        assert "default-user" in checked
        assert not any(p.startswith(("_cache/", "default-user/")) for p in checked)

    def test_local_file_metadata(self, tree):
        files = DirectoryScanner().scan_local(tree)
        a = next(f for f in files if f.relative_path == "a.txt")
        assert a.path == tree / "a.txt"
        assert a.size == len("a.txt")
        assert a.mtime == (tree / "a.txt").stat().st_mtime

    def test_from_path(self, tree):
        local = LocalFile.from_path(tree / "sub" / "b.txt", tree)
        assert local.relative_path == "sub/b.txt"

    def test_unreadable_root_reported(self, tmp_path):
        """Test that listing errors go to on_error and do not raise."""
        on_error = Mock()
        missing = tmp_path / "missing"

        assert DirectoryScanner(on_error=on_error).scan_local(missing) == []
        on_error.assert_called_once()
        assert on_error.call_args.args[0] == missing

    def test_symlinked_directory_not_followed(self, tree, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("x")
        (tree / "link").symlink_to(outside, target_is_directory=True)

        found = [f.relative_path for f in DirectoryScanner().scan_local(tree)]
        assert "link/secret.txt" not in found
