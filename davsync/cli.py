"""CLI interface for davsync."""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

import click

from .api import WebDAVClient
from .config import SyncConfig, load_config
from .exceptions import DavSyncConfigError, RemoteError, RemoteUnreachableError
from .output import OutputFormatter
from .sync import IgnoreFilter, RestoreDownloader, SyncEngine

logger = logging.getLogger(__name__)


def _load(ctx: Any) -> SyncConfig:
    """Load the configuration or exit with status 1."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        config = load_config(ctx.obj["config_path"])
    except DavSyncConfigError as e:
        out.error(f"Configuration error: {e}")
        ctx.exit(1)
    if ctx.obj["verbose"]:
        out.verbose = True
    elif config.verbose:
        out.verbose = True
    return config


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="DAVSYNC_CONFIG",
    help="Path to config.json (default: ./config.json)",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="davsync")
@click.pass_context
def main(ctx: Any, config_path: Optional[Path], quiet: bool, verbose: bool) -> None:
    """davsync - mirror local directories to WebDAV in real time."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose
    ctx.obj["out"] = OutputFormatter(quiet=quiet, verbose=verbose)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("davsync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option(
    "--no-initial-sync",
    is_flag=True,
    help="Skip the initial full sync even if enabled in the configuration",
)
@click.pass_context
def watch(ctx: Any, no_initial_sync: bool) -> None:
    """Mirror the watch directories to WebDAV until interrupted.

    Runs an initial full sync (unless disabled), then uploads changed files
    after a quiet period. Final statistics are printed on Ctrl+C or SIGTERM.
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load(ctx)
    if no_initial_sync:
        config = replace(config, initial_sync=False)

    engine = SyncEngine(config, output=out)
    try:
        engine.run()
    except RemoteUnreachableError as e:
        out.error(str(e))
        ctx.exit(1)
    except DavSyncConfigError as e:
        out.error(f"Configuration error: {e}")
        ctx.exit(1)


@main.command()
@click.option(
    "--marker",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Skip the restore if this file exists; create it after a clean restore",
)
@click.pass_context
def restore(ctx: Any, marker: Optional[Path]) -> None:
    """Download the backup from WebDAV into the watch directories.

    Local files that are at least as new as their remote copy are kept.
    Exits with status 0 when there is nothing to restore.
    """
    out: OutputFormatter = ctx.obj["out"]
    config = _load(ctx)

    if marker is not None and marker.exists():
        out.info(f"Already restored ({marker} exists), skipping")
        return

    out.info("davsync restore")
    out.info(f"WebDAV: {config.endpoint}")
    for root in config.watch_roots:
        out.info(f"  - {root}")
    out.print("")

    client = WebDAVClient.from_config(config)
    downloader = RestoreDownloader(
        client,
        ignore_filter=IgnoreFilter(config.ignore_patterns),
        output=out,
        concurrency=config.restore_concurrency,
        progress_every=config.progress_every,
    )
    try:
        result = downloader.restore_roots(config.watch_roots, config.remote_path)
    except RemoteError as e:
        out.error(f"WebDAV connection failed: {e}")
        ctx.exit(1)
    finally:
        client.close()

    if result.nothing_to_restore:
        return
    if marker is not None and result.ok:
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()
        logger.debug("Created restore marker %s", marker)
    if not result.ok:
        ctx.exit(1)


@main.command()
@click.pass_context
def check(ctx: Any) -> None:
    """Test the WebDAV connection and the remote base path."""
    out: OutputFormatter = ctx.obj["out"]
    config = _load(ctx)

    with WebDAVClient.from_config(config) as client:
        try:
            exists = client.exists(config.remote_path)
        except RemoteError as e:
            out.error(f"WebDAV connection failed: {e}")
            ctx.exit(1)

    out.success(f"Connected to {config.url}")
    if exists:
        out.info(f"Remote base path {config.remote_path} exists")
    else:
        out.warning(f"Remote base path {config.remote_path} does not exist yet")


@main.command(name="config")
@click.pass_context
def show_config(ctx: Any) -> None:
    """Show the effective configuration (password masked)."""
    out: OutputFormatter = ctx.obj["out"]
    config = _load(ctx)

    out.info(f"Config file: {config.source or '(environment only)'}")
    out.info(f"WebDAV: {config.endpoint}")
    out.info(f"User: {config.username or '(none)'}")
    out.output_table(
        [
            {"local": str(r.local_dir), "remote": r.remote_prefix or "."}
            for r in config.watch_roots
        ],
        ["local", "remote"],
        {"local": "Local directory", "remote": "Remote prefix"},
    )
    settings = config.to_dict()
    for key in (
        "debounceMs",
        "initialSync",
        "syncDelete",
        "statsInterval",
        "writeSettleMs",
        "restoreConcurrency",
    ):
        out.info(f"{key}: {settings[key]}")
    if settings["ignorePatterns"]:
        out.info(f"ignorePatterns: {settings['ignorePatterns']}")


if __name__ == "__main__":
    main()
