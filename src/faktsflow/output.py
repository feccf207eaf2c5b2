"""Terminal rendering for faktsflow commands.

Results (status records, endpoint descriptions, service tables) are the
only thing written to stdout, so ``faktsflow status --json | jq`` works.
Everything addressed to the human running the command, including the
consent URL, goes to stderr.

The stdout format is chosen once per invocation. ``--json`` and ``--plain``
force it; otherwise an interactive terminal gets Rich tables and a pipe gets
tab-separated lines. ``NO_COLOR``, ``TERM=dumb`` and ``--no-color`` all turn
off styling.

:func:`~faktsflow.app.main_callback` installs one :class:`OutputManager`
with :func:`set_output`. Commands call the module functions below instead of
passing the manager around.
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormat(str, Enum):
    """How results are rendered on stdout."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Writes results to stdout and messages to stderr.

    Args:
        format: Requested format. ``AUTO`` becomes ``RICH`` on a colour
            terminal and ``PLAIN`` otherwise.
        no_color: Strip styling from both streams.
        quiet: Drop info, success and suggestion messages.
        verbose: Also show debug messages.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose

        rich_ok = _is_tty() and not self._no_color
        if format != OutputFormat.AUTO:
            self._format = format
        elif rich_ok:
            self._format = OutputFormat.RICH
        else:
            self._format = OutputFormat.PLAIN

        self._console = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=self._format == OutputFormat.RICH,
        )
        self._err_console = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    # -- stdout --------------------------------------------------------- #

    def print_data(self, text: str) -> None:
        sys.stdout.write(text + "\n")
        sys.stdout.flush()

    def _emit_json(self, value: Any) -> None:
        self.print_data(json.dumps(value, indent=2, ensure_ascii=False, default=str))

    def print_record(self, record: dict[str, Any], title: Optional[str] = None) -> None:
        """Show a single record.

        JSON mode prints the object as is. Plain mode prints one
        ``key<TAB>value`` line per field. Rich mode draws a two-column
        table with the keys on the left.
        """
        if self._format == OutputFormat.JSON:
            self._emit_json(record)
            return
        pairs = [(key, _cell(value)) for key, value in record.items()]
        if self._format == OutputFormat.PLAIN:
            for key, text in pairs:
                self.print_data(f"{key}\t{text}")
            return
        grid = Table(title=title, show_header=False)
        grid.add_column(style="bold cyan")
        grid.add_column()
        for key, text in pairs:
            grid.add_row(key, text)
        self._console.print(grid)

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Show rows of cells under *headers*.

        In JSON mode each row becomes an object keyed by header.
        """
        if self._format == OutputFormat.JSON:
            self._emit_json([dict(zip(headers, row)) for row in rows])
            return
        if self._format == OutputFormat.PLAIN:
            for line in [headers, *rows]:
                self.print_data("\t".join(line))
            return
        grid = Table(*headers, title=title, header_style="bold cyan")
        for row in rows:
            grid.add_row(*row)
        self._console.print(grid)

    # -- stderr --------------------------------------------------------- #

    def _say(self, text: str, style: Optional[str] = None, label: str = "") -> None:
        if self._no_color:
            sys.stderr.write(f"{label}{text}\n")
            sys.stderr.flush()
            return
        # Message text is literal; only the label and style are markup.
        body = escape(text)
        label = escape(label)
        if style and label:
            markup = f"[{style}]{label}[/{style}]{body}"
        elif style:
            markup = f"[{style}]{body}[/{style}]"
        else:
            markup = label + body
        self._err_console.print(markup, highlight=False)

    def info(self, message: str) -> None:
        if not self._quiet:
            self._say(message)

    def success(self, message: str) -> None:
        if not self._quiet:
            self._say(message, "green")

    def warning(self, message: str) -> None:
        """Printed even with ``--quiet``."""
        self._say(message, "yellow", "Warning: ")

    def error(self, message: str) -> None:
        """Printed even with ``--quiet``."""
        self._say(message, "bold red", "Error: ")

    def suggest(self, message: str) -> None:
        """Hint at the next command to run."""
        if not self._quiet:
            self._say(f"→ {message}", "dim")

    def debug(self, message: str) -> None:
        if self._verbose:
            self._say(message, "dim", "[debug] ")


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, (list, tuple)):
        return ", ".join(map(str, value)) or "-"
    return str(value)


def _is_tty() -> bool:
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


def _should_disable_color() -> bool:
    # NO_COLOR disables colour even when set to an empty string.
    return "NO_COLOR" in os.environ or os.environ.get("TERM") == "dumb"


_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """The installed manager, or a default one if none was installed."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    global _output
    _output = None


def print_record(record: dict[str, Any], title: Optional[str] = None) -> None:
    get_output().print_record(record, title)


def print_table(headers: list[str], rows: list[list[str]], title: Optional[str] = None) -> None:
    get_output().print_table(headers, rows, title)


def info(message: str) -> None:
    get_output().info(message)


def success(message: str) -> None:
    get_output().success(message)


def error(message: str) -> None:
    get_output().error(message)


def suggest(message: str) -> None:
    get_output().suggest(message)
