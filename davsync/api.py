"""WebDAV client for the remote file store."""

from __future__ import annotations

import logging
import posixpath
import random
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote, urlsplit

import httpx

from .exceptions import (
    RemoteAuthenticationError,
    RemoteConflictError,
    RemoteError,
    RemoteInvalidResponseError,
    RemoteNetworkError,
    RemoteNotFoundError,
    RemotePermissionError,
    RemoteRateLimitError,
)
from .utils import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_DELAY,
    normalize_remote_path,
    parse_http_date,
)

if TYPE_CHECKING:
    from .config import SyncConfig

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getlastmodified/><d:getcontentlength/>"
    "</d:prop></d:propfind>"
)


@dataclass(frozen=True)
class RemoteStat:
    """Metadata of a single remote resource."""

    path: str
    """Normalized remote path"""

    is_directory: bool

    last_modified: float | None = None
    """Last modification time (Unix timestamp) if reported"""

    size: int = 0


@dataclass(frozen=True)
class RemoteEntry:
    """A child of a remote directory listing."""

    name: str
    path: str
    is_directory: bool
    last_modified: float | None = None
    size: int = 0


class WebDAVClient:
    """Client for a WebDAV file store.

    All paths are remote paths relative to the configured URL, e.g. ``/backup/
    data/a.txt``. Every request carries a bounded timeout; network errors,
    rate limits and server errors are retried with exponential backoff.
    """

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize WebDAV client.

        Args:
            url: WebDAV endpoint URL
            username: Basic auth user name (no auth if empty)
            password: Basic auth password
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport (used by tests)
        """
        self.url = url.rstrip("/")
        self.username = username
        self.password = password
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport
        self._root_path = unquote(urlsplit(self.url).path).rstrip("/")
        self._client: httpx.Client | None = None

    @classmethod
    def from_config(cls, config: SyncConfig) -> WebDAVClient:
        return cls(
            url=config.url,
            username=config.username,
            password=config.password,
            max_retries=config.max_retries,
            timeout=config.request_timeout,
        )

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            auth = (self.username, self.password) if self.username else None
            self._client = httpx.Client(
                auth=auth,
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> WebDAVClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _url_for(self, path: str) -> str:
        return self.url + quote(normalize_remote_path(path))

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(exception, (RemoteNetworkError, RemoteRateLimitError)):
            return True

        if isinstance(exception, RemoteError) and 500 <= exception.status_code < 600:
            return True

        # Client errors (authentication, permission, not found) are final
        return False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _error_for_status(self, response: httpx.Response, path: str) -> RemoteError:
        """Map an unsuccessful response to an exception."""
        status_code = response.status_code
        if status_code == 401:
            return RemoteAuthenticationError(
                "Invalid WebDAV credentials or unauthorized access", path, status_code
            )
        if status_code == 403:
            return RemotePermissionError(
                f"Access forbidden: {path}", path, status_code
            )
        if status_code == 404:
            return RemoteNotFoundError(f"Not found: {path}", path, status_code)
        if status_code == 409:
            return RemoteConflictError(
                f"Conflict (missing parent directory?): {path}", path, status_code
            )
        if status_code == 429:
            return RemoteRateLimitError(
                "Rate limit exceeded - please try again later", path, status_code
            )
        return RemoteError(
            f"{response.request.method} {path} failed with status {status_code}",
            path,
            status_code,
        )

    def _request(
        self,
        method: str,
        path: str,
        allowed_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Make a WebDAV request with retry logic.

        Args:
            method: HTTP or WebDAV method
            path: Remote path
            allowed_statuses: Error statuses returned to the caller instead of
                raised (e.g. 404 for existence checks)
            **kwargs: Additional arguments passed to httpx

        Returns:
            The response

        Raises:
            RemoteError: If the request fails after all retries
        """
        url = self._url_for(path)
        client = self._get_client()
        last_exception: RemoteError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                error: RemoteError = RemoteNetworkError(
                    f"Network error: {e}", path
                )
                last_exception = error
                if self._should_retry(error, attempt):
                    delay = self._calculate_retry_delay(attempt)
                    logger.debug(
                        "%s %s failed (%s), retrying in %.1fs", method, path, e, delay
                    )
                    time.sleep(delay)
                    continue
                raise error from e

            if response.is_success or response.status_code in allowed_statuses:
                return response

            error = self._error_for_status(response, path)
            last_exception = error
            if self._should_retry(error, attempt):
                retry_after = response.headers.get("Retry-After", "")
                if isinstance(error, RemoteRateLimitError) and retry_after.isdigit():
                    delay = float(retry_after)
                else:
                    delay = self._calculate_retry_delay(attempt)
                logger.debug(
                    "%s %s returned %d, retrying in %.1fs",
                    method,
                    path,
                    response.status_code,
                    delay,
                )
                time.sleep(delay)
                continue
            raise error

        # If we get here, we've exhausted all retries
        if last_exception:
            raise last_exception
        raise RemoteError(f"{method} {path} failed after all retry attempts", path)

    # =========================
    # Metadata Operations
    # =========================

    def _propfind(self, path: str, depth: str) -> list[RemoteStat]:
        response = self._request(
            "PROPFIND",
            path,
            headers={"Depth": depth, "Content-Type": "application/xml"},
            content=PROPFIND_BODY.encode("utf-8"),
        )
        return self._parse_multistatus(response.content, path)

    def _href_to_path(self, href: str) -> str:
        href_path = unquote(urlsplit(href).path if "://" in href else href)
        if self._root_path and (
            href_path == self._root_path
            or href_path.startswith(self._root_path + "/")
        ):
            href_path = href_path[len(self._root_path) :]
        return normalize_remote_path(href_path)

    def _parse_multistatus(self, content: bytes, path: str) -> list[RemoteStat]:
        """Parse a PROPFIND multistatus body.

        Args:
            content: Response body
            path: Requested path (for error messages)

        Returns:
            One RemoteStat per ``<response>`` element

        Raises:
            RemoteInvalidResponseError: If the body is not a multistatus document
        """
        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            raise RemoteInvalidResponseError(
                f"Invalid PROPFIND response for {path}: {e}", path
            ) from e
        if root.tag != f"{DAV_NS}multistatus":
            raise RemoteInvalidResponseError(
                f"Unexpected PROPFIND response for {path}: <{root.tag}>", path
            )

        results: list[RemoteStat] = []
        for response in root.findall(f"{DAV_NS}response"):
            href = response.findtext(f"{DAV_NS}href")
            if not href:
                continue
            is_directory = False
            last_modified = None
            size = 0
            for propstat in response.findall(f"{DAV_NS}propstat"):
                status = propstat.findtext(f"{DAV_NS}status") or ""
                if status and " 200 " not in f"{status} ":
                    continue
                prop = propstat.find(f"{DAV_NS}prop")
                if prop is None:
                    continue
                resourcetype = prop.find(f"{DAV_NS}resourcetype")
                if (
                    resourcetype is not None
                    and resourcetype.find(f"{DAV_NS}collection") is not None
                ):
                    is_directory = True
                modified = parse_http_date(prop.findtext(f"{DAV_NS}getlastmodified"))
                if modified is not None:
                    last_modified = modified
                length = prop.findtext(f"{DAV_NS}getcontentlength")
                if length and length.strip().isdigit():
                    size = int(length)
            # Some servers only mark collections with a trailing slash
            if href.endswith("/"):
                is_directory = True
            results.append(
                RemoteStat(
                    path=self._href_to_path(href),
                    is_directory=is_directory,
                    last_modified=last_modified,
                    size=size,
                )
            )
        return results

    def exists(self, path: str) -> bool:
        """Check whether a remote path exists.

        Args:
            path: Remote path

        Returns:
            True if the server knows the path
        """
        response = self._request(
            "PROPFIND",
            path,
            allowed_statuses=(404,),
            headers={"Depth": "0", "Content-Type": "application/xml"},
            content=PROPFIND_BODY.encode("utf-8"),
        )
        return response.status_code != 404

    def stat(self, path: str) -> RemoteStat:
        """Get metadata for a remote path.

        Raises:
            RemoteNotFoundError: If the path does not exist
        """
        entries = self._propfind(path, depth="0")
        if not entries:
            raise RemoteInvalidResponseError(f"Empty PROPFIND response for {path}", path)
        return entries[0]

    def list_directory(self, path: str) -> list[RemoteEntry]:
        """List the direct children of a remote directory.

        Args:
            path: Remote directory path

        Returns:
            Child entries (the directory itself is excluded)
        """
        target = normalize_remote_path(path)
        entries: list[RemoteEntry] = []
        for item in self._propfind(target, depth="1"):
            if item.path == target:
                continue
            entries.append(
                RemoteEntry(
                    name=posixpath.basename(item.path),
                    path=item.path,
                    is_directory=item.is_directory,
                    last_modified=item.last_modified,
                    size=item.size,
                )
            )
        return entries

    # =========================
    # Content Operations
    # =========================

    def read_file(self, path: str) -> bytes:
        """Download a remote file's content."""
        return self._request("GET", path).content

    def write_file(self, path: str, data: bytes, overwrite: bool = True) -> None:
        """Upload content to a remote file.

        Args:
            path: Remote file path (parent directory must exist)
            data: File content
            overwrite: Replace an existing file (last write wins)

        Raises:
            RemoteError: If the upload fails. With ``overwrite=False`` an
                existing file causes a 412 error.
        """
        headers = {"Content-Type": "application/octet-stream"}
        if not overwrite:
            headers["If-None-Match"] = "*"
        self._request("PUT", path, headers=headers, content=data)

    def create_directory(self, path: str) -> None:
        """Create a remote directory.

        An already existing directory (405 Method Not Allowed) is not an error.
        """
        response = self._request("MKCOL", path, allowed_statuses=(405,))
        if response.status_code == 405:
            logger.debug("Remote directory already exists: %s", path)

    def delete_file(self, path: str) -> None:
        """Delete a remote file. A missing file is not an error."""
        response = self._request("DELETE", path, allowed_statuses=(404,))
        if response.status_code == 404:
            logger.debug("Remote file already gone: %s", path)
