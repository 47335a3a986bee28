"""davsync - real-time WebDAV backup and restore of local directories."""

from .api import RemoteEntry, RemoteStat, WebDAVClient
from .config import SyncConfig, WatchRoot, load_config
from .exceptions import (
    DavSyncConfigError,
    DavSyncError,
    RemoteAuthenticationError,
    RemoteConflictError,
    RemoteError,
    RemoteInvalidResponseError,
    RemoteNetworkError,
    RemoteNotFoundError,
    RemotePermissionError,
    RemoteRateLimitError,
    RemoteUnreachableError,
)

__version__ = "0.1.0"

__all__ = [
    "WebDAVClient",
    "RemoteEntry",
    "RemoteStat",
    "SyncConfig",
    "WatchRoot",
    "load_config",
    "DavSyncError",
    "DavSyncConfigError",
    "RemoteError",
    "RemoteAuthenticationError",
    "RemoteConflictError",
    "RemoteInvalidResponseError",
    "RemoteNetworkError",
    "RemoteNotFoundError",
    "RemotePermissionError",
    "RemoteRateLimitError",
    "RemoteUnreachableError",
]
