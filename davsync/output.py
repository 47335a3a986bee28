"""Console output formatting for davsync."""

import threading
from typing import Any, Optional

from rich.console import Console
from rich.table import Table


class OutputFormatter:
    """Prints human-readable status lines.

    Uploads finish on timer threads, so printing is serialized with a lock
    to keep lines from interleaving.
    """

    def __init__(
        self,
        quiet: bool = False,
        verbose: bool = False,
        console: Optional[Console] = None,
        err_console: Optional[Console] = None,
    ):
        """Initialize output formatter.

        Args:
            quiet: Suppress info and success lines (errors are still shown)
            verbose: Also show detail lines such as unchanged-file skips
            console: Console for regular output
            err_console: Console for warnings and errors
        """
        self.quiet = quiet
        self.verbose = verbose
        self.console = console or Console(highlight=False)
        self.err_console = err_console or Console(stderr=True, highlight=False)
        self._lock = threading.Lock()

    def print(self, message: str = "") -> None:
        if self.quiet:
            return
        with self._lock:
            self.console.print(message, markup=False)

    def info(self, message: str) -> None:
        if self.quiet:
            return
        with self._lock:
            self.console.print(message, markup=False)

    def detail(self, message: str) -> None:
        """Print a line only in verbose mode."""
        if self.quiet or not self.verbose:
            return
        with self._lock:
            self.console.print(message, style="dim", markup=False)

    def success(self, message: str) -> None:
        if self.quiet:
            return
        with self._lock:
            self.console.print(message, style="green", markup=False)

    def warning(self, message: str) -> None:
        with self._lock:
            self.err_console.print(message, style="yellow", markup=False)

    def error(self, message: str) -> None:
        with self._lock:
            self.err_console.print(message, style="bold red", markup=False)

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
        title: Optional[str] = None,
    ) -> None:
        """Print rows as a table.

        Args:
            rows: Row dictionaries
            columns: Keys to display, in order
            headers: Optional mapping of column key to header text
            title: Optional table title
        """
        if self.quiet:
            return
        headers = headers or {}
        table = Table(title=title, show_header=True, header_style="bold")
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            table.add_row(*(str(row.get(column, "")) for column in columns))
        with self._lock:
            self.console.print(table)
