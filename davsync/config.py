"""Configuration loading for davsync.

The configuration is a JSON file (camelCase keys) describing the WebDAV
endpoint and the local directories to mirror. WebDAV credentials can also be
supplied through environment variables, in which case the file is optional.
"""

import copy
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import DavSyncConfigError
from .utils import (
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PROGRESS_EVERY,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SETTLE_POLL_MS,
    DEFAULT_WRITE_SETTLE_MS,
    normalize_remote_path,
)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DAVSYNC_CONFIG"
DEFAULT_CONFIG_FILE = "config.json"
DEFAULT_REMOTE_PATH = "/"

ENV_WEBDAV_URL = "WEBDAV_URL"
ENV_WEBDAV_USERNAME = "WEBDAV_USERNAME"
ENV_WEBDAV_PASSWORD = "WEBDAV_PASSWORD"
ENV_WEBDAV_REMOTE_PATH = "WEBDAV_REMOTE_PATH"

# Used when no config file exists and the WebDAV credentials come from the
# environment (container deployments). Directories are relative to the
# directory the config file would live in.
ENVIRONMENT_DEFAULTS: dict[str, Any] = {
    "webdav": {"remotePath": "/SillyTavern-Backup"},
    "watchDir": "../data",
    "watchConfigDir": "../config",
    "ignorePatterns": [
        "_cache",
        "_webpack",
        "thumbnails",
        ".tmp",
        ".temp",
        "node_modules",
    ],
    "statsInterval": 300,
    "initialSync": False,
}

IgnorePattern = Union[str, "re.Pattern[str]"]


@dataclass(frozen=True)
class WatchRoot:
    """A local directory tree paired with a namespace on the remote store."""

    local_dir: Path
    """Absolute local directory"""

    remote_prefix: str
    """Prefix below the remote base path (no leading/trailing slashes)"""

    def __post_init__(self) -> None:
        object.__setattr__(self, "local_dir", Path(self.local_dir))
        object.__setattr__(self, "remote_prefix", self.remote_prefix.strip("/"))

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> "WatchRoot":
        """Create a WatchRoot from a ``{"localDir", "remotePrefix"}`` mapping.

        Args:
            data: Mapping from the configuration file
            base_dir: Directory relative ``localDir`` values resolve against

        Raises:
            DavSyncConfigError: If ``localDir`` is missing
        """
        local_dir = data.get("localDir")
        if not local_dir:
            raise DavSyncConfigError(f"Watch directory entry missing localDir: {data}")
        remote_prefix = data.get("remotePrefix")
        if remote_prefix is None:
            remote_prefix = Path(local_dir).name
        return cls(
            local_dir=_resolve_local(local_dir, base_dir),
            remote_prefix=str(remote_prefix),
        )

    def __str__(self) -> str:
        return f"{self.local_dir} -> {self.remote_prefix or '.'}/"


@dataclass(frozen=True)
class SyncConfig:
    """Effective configuration, immutable after loading."""

    url: str
    username: str = ""
    password: str = ""
    remote_path: str = DEFAULT_REMOTE_PATH
    watch_roots: tuple[WatchRoot, ...] = ()
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    ignore_patterns: tuple[IgnorePattern, ...] = ()
    sync_delete: bool = False
    initial_sync: bool = True
    verbose: bool = False
    stats_interval: float = 0
    write_settle_ms: int = DEFAULT_WRITE_SETTLE_MS
    settle_poll_ms: int = DEFAULT_SETTLE_POLL_MS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    delete_retries: int = 0
    restore_concurrency: int = 1
    progress_every: int = DEFAULT_PROGRESS_EVERY
    source: Optional[Path] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "remote_path", normalize_remote_path(self.remote_path))
        object.__setattr__(self, "watch_roots", tuple(self.watch_roots))
        object.__setattr__(self, "ignore_patterns", tuple(self.ignore_patterns))

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @property
    def endpoint(self) -> str:
        """Display form of the remote location."""
        return f"{self.url.rstrip('/')}{self.remote_path}"

    def validate(self) -> None:
        """Check the configuration for errors.

        Raises:
            DavSyncConfigError: On the first problem found
        """
        if not self.url:
            raise DavSyncConfigError(
                "WebDAV URL not configured. Set webdav.url in the config file "
                f"or the {ENV_WEBDAV_URL} environment variable."
            )
        if not self.url.startswith(("http://", "https://")):
            raise DavSyncConfigError(f"WebDAV URL must be http(s): {self.url}")
        if not self.watch_roots:
            raise DavSyncConfigError("No watch directories configured")
        if self.debounce_ms <= 0:
            raise DavSyncConfigError(
                f"debounceMs must be positive, got {self.debounce_ms}"
            )
        if self.write_settle_ms < 0 or self.settle_poll_ms <= 0:
            raise DavSyncConfigError("writeSettleMs/settlePollMs out of range")
        if self.request_timeout <= 0:
            raise DavSyncConfigError("requestTimeout must be positive")
        if self.max_retries < 0 or self.delete_retries < 0:
            raise DavSyncConfigError("Retry counts cannot be negative")
        if self.restore_concurrency < 1:
            raise DavSyncConfigError("restoreConcurrency must be at least 1")
        if self.progress_every < 1:
            raise DavSyncConfigError("progressEvery must be at least 1")
        if self.stats_interval < 0:
            raise DavSyncConfigError("statsInterval cannot be negative")

        prefixes: dict[str, WatchRoot] = {}
        for root in self.watch_roots:
            if root.remote_prefix in prefixes:
                raise DavSyncConfigError(
                    f"Watch directories {prefixes[root.remote_prefix].local_dir} and "
                    f"{root.local_dir} share remote prefix '{root.remote_prefix}'"
                )
            prefixes[root.remote_prefix] = root

        # First-match mapping would silently mis-route files of a nested root
        roots = list(self.watch_roots)
        for i, outer in enumerate(roots):
            for inner in roots[i + 1 :]:
                if _is_within(inner.local_dir, outer.local_dir) or _is_within(
                    outer.local_dir, inner.local_dir
                ):
                    raise DavSyncConfigError(
                        f"Watch directories overlap: {outer.local_dir} and "
                        f"{inner.local_dir}"
                    )

    def to_dict(self, mask_password: bool = True) -> dict:
        """Convert to the configuration file format."""
        ignore: list[Any] = []
        for pattern in self.ignore_patterns:
            if isinstance(pattern, str):
                ignore.append(pattern)
            else:
                ignore.append({"regex": pattern.pattern})
        password = self.password
        if mask_password and password:
            password = "********"
        return {
            "webdav": {
                "url": self.url,
                "username": self.username,
                "password": password,
                "remotePath": self.remote_path,
            },
            "watchDirs": [
                {"localDir": str(r.local_dir), "remotePrefix": r.remote_prefix}
                for r in self.watch_roots
            ],
            "debounceMs": self.debounce_ms,
            "ignorePatterns": ignore,
            "syncDelete": self.sync_delete,
            "initialSync": self.initial_sync,
            "verbose": self.verbose,
            "statsInterval": self.stats_interval,
            "writeSettleMs": self.write_settle_ms,
            "settlePollMs": self.settle_poll_ms,
            "requestTimeout": self.request_timeout,
            "maxRetries": self.max_retries,
            "deleteRetries": self.delete_retries,
            "restoreConcurrency": self.restore_concurrency,
            "progressEvery": self.progress_every,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict,
        base_dir: Optional[Path] = None,
        env: Optional[dict[str, str]] = None,
    ) -> "SyncConfig":
        """Create a SyncConfig from a parsed configuration mapping.

        Args:
            data: Parsed JSON configuration
            base_dir: Directory relative paths resolve against
                (defaults to the current directory)
            env: Environment mapping used for overrides (defaults to os.environ)

        Returns:
            Validated SyncConfig

        Raises:
            DavSyncConfigError: If the configuration is invalid
        """
        if not isinstance(data, dict):
            raise DavSyncConfigError("Configuration root must be a JSON object")
        env = dict(os.environ) if env is None else env

        webdav = data.get("webdav") or {}
        if not isinstance(webdav, dict):
            raise DavSyncConfigError("'webdav' must be an object")
        url = webdav.get("url", "")
        username = webdav.get("username", "")
        password = webdav.get("password", "")
        remote_path = webdav.get("remotePath") or DEFAULT_REMOTE_PATH

        if env.get(ENV_WEBDAV_URL) and env.get(ENV_WEBDAV_USERNAME) and env.get(
            ENV_WEBDAV_PASSWORD
        ):
            logger.debug("Using WebDAV credentials from environment")
            url = env[ENV_WEBDAV_URL]
            username = env[ENV_WEBDAV_USERNAME]
            password = env[ENV_WEBDAV_PASSWORD]
            remote_path = env.get(ENV_WEBDAV_REMOTE_PATH) or remote_path

        roots = [
            WatchRoot.from_dict(entry, base_dir)
            for entry in data.get("watchDirs") or []
        ]
        # Single-directory keys from older configuration files
        if not roots:
            roots.append(
                WatchRoot(
                    local_dir=_resolve_local(data.get("watchDir", "data"), base_dir),
                    remote_prefix="data",
                )
            )
        if data.get("watchConfigDir"):
            roots.append(
                WatchRoot(
                    local_dir=_resolve_local(data["watchConfigDir"], base_dir),
                    remote_prefix="config",
                )
            )

        try:
            config = cls(
                url=url,
                username=username,
                password=password,
                remote_path=remote_path,
                watch_roots=tuple(roots),
                debounce_ms=int(data.get("debounceMs", DEFAULT_DEBOUNCE_MS)),
                ignore_patterns=tuple(
                    _parse_ignore_patterns(data.get("ignorePatterns") or [])
                ),
                sync_delete=bool(data.get("syncDelete", False)),
                initial_sync=bool(data.get("initialSync", True)),
                verbose=bool(data.get("verbose", False)),
                stats_interval=float(data.get("statsInterval") or 0),
                write_settle_ms=int(data.get("writeSettleMs", DEFAULT_WRITE_SETTLE_MS)),
                settle_poll_ms=int(data.get("settlePollMs", DEFAULT_SETTLE_POLL_MS)),
                request_timeout=float(
                    data.get("requestTimeout", DEFAULT_REQUEST_TIMEOUT)
                ),
                max_retries=int(data.get("maxRetries", DEFAULT_MAX_RETRIES)),
                delete_retries=int(data.get("deleteRetries", 0)),
                restore_concurrency=int(data.get("restoreConcurrency", 1)),
                progress_every=int(data.get("progressEvery", DEFAULT_PROGRESS_EVERY)),
            )
        except (TypeError, ValueError) as e:
            raise DavSyncConfigError(f"Invalid configuration value: {e}") from e

        config.validate()
        return config


def _resolve_local(value: Union[str, Path], base_dir: Optional[Path]) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir or Path.cwd()) / path
    return path.resolve()


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def _parse_ignore_patterns(entries: list) -> list[IgnorePattern]:
    """Parse ``ignorePatterns``: strings are substrings, ``{"regex"}`` are regexes."""
    patterns: list[IgnorePattern] = []
    for entry in entries:
        if isinstance(entry, str):
            patterns.append(entry)
        elif isinstance(entry, dict) and "regex" in entry:
            try:
                patterns.append(re.compile(entry["regex"]))
            except re.error as e:
                raise DavSyncConfigError(
                    f"Invalid ignore regex {entry['regex']!r}: {e}"
                ) from e
        else:
            raise DavSyncConfigError(f"Unsupported ignore pattern: {entry!r}")
    return patterns


def default_config_path(env: Optional[dict[str, str]] = None) -> Path:
    """Return the configuration path from $DAVSYNC_CONFIG or ./config.json."""
    env = dict(os.environ) if env is None else env
    return Path(env.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[dict[str, str]] = None,
) -> SyncConfig:
    """Load and validate the sync configuration.

    Args:
        path: Configuration file (defaults to $DAVSYNC_CONFIG or ./config.json)
        env: Environment mapping used for overrides (defaults to os.environ)

    Returns:
        Validated SyncConfig

    Raises:
        DavSyncConfigError: If the file is unreadable or the result is invalid

    Examples:
        >>> config = load_config("config.json")
        >>> [str(r) for r in config.watch_roots]
        ['/srv/app/data -> data/', '/srv/app/config -> config/']
    """
    env = dict(os.environ) if env is None else env
    config_path = Path(path) if path else default_config_path(env)

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise DavSyncConfigError(
                f"Invalid JSON in config file {config_path}: {e}"
            ) from e
        except OSError as e:
            raise DavSyncConfigError(
                f"Cannot read config file {config_path}: {e}"
            ) from e
        base_dir = config_path.resolve().parent
        logger.debug("Loaded configuration from %s", config_path)
    elif all(
        env.get(name)
        for name in (ENV_WEBDAV_URL, ENV_WEBDAV_USERNAME, ENV_WEBDAV_PASSWORD)
    ):
        data = copy.deepcopy(ENVIRONMENT_DEFAULTS)
        base_dir = config_path.resolve().parent
        logger.debug("No config file, using environment defaults")
    else:
        raise DavSyncConfigError(
            f"Config file not found: {config_path}. Copy config.example.json to "
            f"{config_path} or set the {ENV_WEBDAV_URL}, {ENV_WEBDAV_USERNAME} and "
            f"{ENV_WEBDAV_PASSWORD} environment variables."
        )

    config = SyncConfig.from_dict(data, base_dir=base_dir, env=env)
    object.__setattr__(config, "source", config_path if config_path.exists() else None)
    return config
