"""Remote-side sync operations: directory creation, upload and delete."""

import logging
import posixpath
import time
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from ..api import WebDAVClient
from ..exceptions import RemoteConflictError, RemoteError
from ..output import OutputFormatter
from ..utils import content_hash, format_size, normalize_remote_path, remote_segments
from .mapper import PathMapper
from .state import HashCache, SyncStats

logger = logging.getLogger(__name__)


class UploadResult(str, Enum):
    """Outcome of a single upload attempt."""

    UPLOADED = "uploaded"
    """Content changed and was written remotely"""

    SKIPPED = "skipped"
    """Content hash equals the last uploaded hash"""

    MISSING = "missing"
    """File vanished before it could be read"""

    UNMAPPED = "unmapped"
    """File is not below any watch root"""

    FAILED = "failed"
    """Read, directory creation or upload failed"""


class RemoteDirectoryEnsurer:
    """Creates every missing ancestor directory of a remote file.

    Existence is checked against the server on every call instead of being
    cached, so a directory deleted out of band is recreated on the next upload.
    """

    def __init__(self, client: WebDAVClient, remote_base: str = "/"):
        self.client = client
        self.remote_base = normalize_remote_path(remote_base)

    def ensure_parent(self, remote_file_path: str) -> None:
        """Make sure the parent directory of ``remote_file_path`` exists.

        Args:
            remote_file_path: Remote path of the file about to be written

        Raises:
            RemoteError: If a directory can neither be found nor created
        """
        self.ensure_directory(posixpath.dirname(normalize_remote_path(remote_file_path)))

    def ensure_directory(self, remote_dir: str) -> None:
        """Create ``remote_dir`` and its missing ancestors, left to right."""
        target = normalize_remote_path(remote_dir)
        if target == self.remote_base or target == "/":
            return

        if target.startswith(self.remote_base.rstrip("/") + "/"):
            current = self.remote_base
            segments = remote_segments(target[len(self.remote_base) :])
        else:
            current = "/"
            segments = remote_segments(target)

        try:
            self._create_chain(current, segments)
        except RemoteConflictError:
            if current == "/":
                raise
            # 409 means a missing parent: the base was removed out of band
            logger.warning("Remote base %s is missing, recreating it", self.remote_base)
            self._create_chain("/", remote_segments(target))

    def _create_chain(self, current: str, segments: list[str]) -> None:
        for segment in segments:
            current = posixpath.join(current, segment)
            if self.client.exists(current):
                continue
            try:
                self.client.create_directory(current)
                logger.debug("Created remote directory: %s", current)
            except RemoteError:
                # Another uploader may have created it in the meantime
                if not self.client.exists(current):
                    raise
                logger.debug("Remote directory appeared concurrently: %s", current)


class UploadPipeline:
    """Uploads a local file when its content differs from the last upload."""

    def __init__(
        self,
        client: WebDAVClient,
        mapper: PathMapper,
        hash_cache: HashCache,
        stats: SyncStats,
        ensurer: Optional[RemoteDirectoryEnsurer] = None,
        output: Optional[OutputFormatter] = None,
    ):
        """Initialize the upload pipeline.

        Args:
            client: WebDAV client
            mapper: Local to remote path mapper
            hash_cache: Shared content hash cache
            stats: Shared statistics
            ensurer: Remote directory ensurer (created from the mapper's base
                path when omitted)
            output: Output formatter for status lines
        """
        self.client = client
        self.mapper = mapper
        self.hash_cache = hash_cache
        self.stats = stats
        self.ensurer = ensurer or RemoteDirectoryEnsurer(client, mapper.remote_base)
        self.output = output or OutputFormatter()

    def _display_path(self, local_path: Path) -> str:
        found = self.mapper.relative_path(local_path)
        if found is None:
            return str(local_path)
        root, relative = found
        return posixpath.join(root.remote_prefix, relative) if root.remote_prefix else relative

    def maybe_upload(self, local_path: Union[str, Path]) -> UploadResult:
        """Upload ``local_path`` if its content changed since the last upload.

        Failures are counted and logged here and never raised, so one bad
        file cannot stop the caller.

        Args:
            local_path: Absolute local file path

        Returns:
            What happened to the file
        """
        path = Path(local_path)
        if not path.is_file():
            logger.debug("File no longer exists, skipping: %s", path)
            return UploadResult.MISSING

        try:
            data = path.read_bytes()
        except FileNotFoundError:
            logger.debug("File removed while reading, skipping: %s", path)
            return UploadResult.MISSING
        except OSError as e:
            self.stats.increment("errors")
            self.output.error(f"Cannot read {path}: {e}")
            return UploadResult.FAILED

        digest = content_hash(data)
        if self.hash_cache.is_unchanged(path, digest):
            self.stats.increment("skipped")
            self.output.detail(f"Unchanged, skipped: {self._display_path(path)}")
            return UploadResult.SKIPPED

        remote_path = self.mapper.to_remote(path)
        if remote_path is None:
            self.output.info(f"Not inside a watched directory, skipped: {path}")
            return UploadResult.UNMAPPED

        start = time.time()
        try:
            self.ensurer.ensure_parent(remote_path)
            self.client.write_file(remote_path, data, overwrite=True)
        except Exception as e:
            # The old hash stays cached so the next change retries the upload
            self.stats.increment("errors")
            self.output.error(f"Upload failed: {path}: {e}")
            logger.debug("Upload of %s failed", path, exc_info=True)
            return UploadResult.FAILED

        self.hash_cache.set(path, digest)
        self.stats.increment("uploaded")
        logger.debug(
            "Upload of %s (%s) took %.2fs",
            remote_path,
            format_size(len(data)),
            time.time() - start,
        )
        self.output.success(f"Synced: {self._display_path(path)} -> {remote_path}")
        return UploadResult.UPLOADED


class DeletionPropagator:
    """Mirrors local deletions to the remote store when enabled."""

    def __init__(
        self,
        client: WebDAVClient,
        mapper: PathMapper,
        hash_cache: HashCache,
        stats: SyncStats,
        sync_delete: bool = False,
        delete_retries: int = 0,
        retry_delay: float = 1.0,
        output: Optional[OutputFormatter] = None,
    ):
        """Initialize the deletion propagator.

        Args:
            client: WebDAV client
            mapper: Local to remote path mapper
            hash_cache: Shared content hash cache
            stats: Shared statistics
            sync_delete: Delete remote counterparts of deleted local files
            delete_retries: Extra attempts after a failed remote delete
            retry_delay: Seconds between delete attempts
            output: Output formatter for status lines
        """
        self.client = client
        self.mapper = mapper
        self.hash_cache = hash_cache
        self.stats = stats
        self.sync_delete = sync_delete
        self.delete_retries = delete_retries
        self.retry_delay = retry_delay
        self.output = output or OutputFormatter()

    def on_delete(self, local_path: Union[str, Path]) -> bool:
        """Handle the removal of a local file.

        The hash cache entry is always evicted so that a later file at the same
        path is treated as new content.

        Args:
            local_path: Absolute path of the deleted file

        Returns:
            True if a remote file was deleted
        """
        path = Path(local_path)
        try:
            if not self.sync_delete:
                return False

            remote_path = self.mapper.to_remote(path)
            if remote_path is None:
                logger.debug("Deleted file not inside a watched directory: %s", path)
                return False

            for attempt in range(self.delete_retries + 1):
                try:
                    return self._delete_remote(remote_path)
                except Exception as e:
                    if attempt < self.delete_retries:
                        logger.debug(
                            "Delete of %s failed (attempt %d/%d): %s",
                            remote_path,
                            attempt + 1,
                            self.delete_retries + 1,
                            e,
                        )
                        time.sleep(self.retry_delay)
                        continue
                    self.stats.increment("errors")
                    self.output.error(f"Failed to delete remote file: {path}: {e}")
            return False
        finally:
            self.hash_cache.evict(path)

    def _delete_remote(self, remote_path: str) -> bool:
        if not self.client.exists(remote_path):
            logger.debug("Remote file already absent: %s", remote_path)
            return False
        self.client.delete_file(remote_path)
        self.stats.increment("deleted")
        self.output.success(f"Deleted remote file: {remote_path}")
        return True
