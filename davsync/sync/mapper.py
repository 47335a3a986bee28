"""Translation between local paths and remote paths."""

import posixpath
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Union

from ..config import WatchRoot
from ..utils import join_remote, normalize_remote_path


class PathMapper:
    """Maps local files under watch roots to remote paths and back.

    A local file ``<root.local_dir>/<rel>`` maps to
    ``<remote_base>/<root.remote_prefix>/<rel>``. When roots overlap, the first
    matching root wins; configuration validation rejects overlapping roots.

    Examples:
        >>> mapper = PathMapper([WatchRoot(Path("/srv/data"), "data")], "/backup")
        >>> mapper.to_remote(Path("/srv/data/chats/a.jsonl"))
        '/backup/data/chats/a.jsonl'
        >>> mapper.to_remote(Path("/etc/passwd")) is None
        True
    """

    def __init__(self, roots: Sequence[WatchRoot], remote_base: str = "/"):
        self.roots = list(roots)
        self.remote_base = normalize_remote_path(remote_base)

    def find_root(self, local_path: Union[str, Path]) -> Optional[WatchRoot]:
        """Return the first watch root containing ``local_path``."""
        found = self.relative_path(local_path)
        return found[0] if found else None

    def relative_path(
        self, local_path: Union[str, Path]
    ) -> Optional[tuple[WatchRoot, str]]:
        """Find the owning root and the POSIX path relative to it.

        Args:
            local_path: Absolute local path

        Returns:
            ``(root, relative_path)`` or None when no root contains the path
        """
        path = Path(local_path).absolute()
        for root in self.roots:
            try:
                relative = path.relative_to(root.local_dir)
            except ValueError:
                continue
            return root, relative.as_posix() if relative.parts else ""
        return None

    def root_remote_path(self, root: WatchRoot) -> str:
        """Remote directory corresponding to a watch root."""
        return join_remote(self.remote_base, root.remote_prefix)

    def to_remote(self, local_path: Union[str, Path]) -> Optional[str]:
        """Map a local path to its remote path, or None if unmapped."""
        found = self.relative_path(local_path)
        if found is None:
            return None
        root, relative = found
        return join_remote(self.remote_base, root.remote_prefix, relative)

    def to_local(self, remote_path: str, root: WatchRoot) -> Optional[Path]:
        """Map a remote path below ``root``'s remote directory to a local path.

        Returns:
            Local path, or None when the remote path is outside the root
        """
        relative = self.remote_relative(remote_path, self.root_remote_path(root))
        if relative is None:
            return None
        return root.local_dir / relative if relative else root.local_dir

    @staticmethod
    def remote_relative(remote_path: str, remote_dir: str) -> Optional[str]:
        """Path of ``remote_path`` relative to ``remote_dir`` or None."""
        path = normalize_remote_path(remote_path)
        base = normalize_remote_path(remote_dir)
        if path == base:
            return ""
        if base == "/":
            return path.lstrip("/")
        if path.startswith(base + "/"):
            return posixpath.relpath(path, base)
        return None
