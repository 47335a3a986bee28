"""Utility functions for davsync."""

import hashlib
import posixpath
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional

# =============================================================================
# Constants
# =============================================================================

# Quiet period before a changed file is uploaded
DEFAULT_DEBOUNCE_MS: int = 2000

# A file must be unchanged for this long before its event is reported
DEFAULT_WRITE_SETTLE_MS: int = 1000
DEFAULT_SETTLE_POLL_MS: int = 100

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds
DEFAULT_REQUEST_TIMEOUT: float = 30.0  # seconds

# Initial sync progress is reported every N files
DEFAULT_PROGRESS_EVERY: int = 50

# Directory name reserved for the host application's default identity
RESERVED_IDENTITY_DIR: str = "default-user"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def content_hash(data: bytes) -> str:
    """Calculate the MD5 hex digest of file content.

    The digest is only used as a change fingerprint, not for security.

    Examples:
        >>> content_hash(b"hello")
        '5d41402abc4b2a76b9719d911017c592'
    """
    return hashlib.md5(data).hexdigest()


# =============================================================================
# Remote path utilities
# =============================================================================


def normalize_remote_path(path: str) -> str:
    """Normalize a remote path to an absolute POSIX path without trailing slash.

    Examples:
        >>> normalize_remote_path("backup/")
        '/backup'
        >>> normalize_remote_path("")
        '/'
        >>> normalize_remote_path("/a//b/./c")
        '/a/b/c'
    """
    if not path:
        return "/"
    return posixpath.normpath("/" + path.strip().lstrip("/"))


def join_remote(*parts: str) -> str:
    """Join remote path segments into a normalized absolute path.

    Examples:
        >>> join_remote("/backup", "data", "a.txt")
        '/backup/data/a.txt'
        >>> join_remote("/", "", "config/x.json")
        '/config/x.json'
    """
    segments = [p.strip("/") for p in parts if p and p.strip("/")]
    return normalize_remote_path("/".join(segments))


def remote_segments(path: str) -> list[str]:
    """Split a remote path into its non-empty segments."""
    return [s for s in normalize_remote_path(path).split("/") if s]


# =============================================================================
# Timestamp parsing utilities
# =============================================================================


def parse_http_date(value: Optional[str]) -> Optional[float]:
    """Parse an RFC 1123 date (WebDAV getlastmodified) to a Unix timestamp.

    Args:
        value: Date string such as "Wed, 15 Jan 2025 10:30:00 GMT"

    Returns:
        Unix timestamp or None if the value is missing or malformed
    """
    if not value:
        return None
    try:
        return parsedate_to_datetime(value.strip()).timestamp()
    except (TypeError, ValueError, IndexError):
        pass
    # Some servers send ISO 8601 instead
    try:
        iso = value.strip()
        if iso.endswith("Z"):
            iso = iso[:-1] + "+00:00"
        return datetime.fromisoformat(iso).timestamp()
    except ValueError:
        return None


# =============================================================================
# Formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


def format_duration(seconds: float) -> str:
    """Format an elapsed time in seconds as "1h 2m 3s".

    Examples:
        >>> format_duration(5)
        '5s'
        >>> format_duration(3723)
        '1h 2m 3s'
    """
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
