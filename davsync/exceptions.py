"""Exceptions raised by davsync."""


class DavSyncError(Exception):
    """Base exception for all davsync errors."""


class DavSyncConfigError(DavSyncError):
    """Raised when the sync configuration is missing or invalid."""


class RemoteError(DavSyncError):
    """Base exception for failures talking to the remote store."""

    def __init__(self, message: str, path: str = "", status_code: int = 0):
        super().__init__(message)
        self.path = path
        self.status_code = status_code


class RemoteAuthenticationError(RemoteError):
    """Raised when the WebDAV server rejects the credentials (401)."""


class RemotePermissionError(RemoteError):
    """Raised when access to a remote path is forbidden (403)."""


class RemoteNotFoundError(RemoteError):
    """Raised when a remote path does not exist (404)."""


class RemoteConflictError(RemoteError):
    """Raised when the server reports a conflict, usually a missing parent (409)."""


class RemoteRateLimitError(RemoteError):
    """Raised when the server throttles requests (429)."""


class RemoteNetworkError(RemoteError):
    """Raised on transport-level failures (DNS, connect, timeout)."""


class RemoteInvalidResponseError(RemoteError):
    """Raised when a response body cannot be parsed."""


class RemoteUnreachableError(DavSyncError):
    """Raised when the startup connectivity probe fails."""
