"""The ``faktsflow`` command line.

Registers the session commands from :mod:`faktsflow.commands.session` on a
Typer app and provides :func:`main`, the console-script entry point.

Errors derived from :class:`~faktsflow.exceptions.FaktsflowError` end the
process with their own exit code. Anything else is treated as a bug: the
traceback is saved under ``<data_dir>/logs`` and the user is pointed to it.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from faktsflow import __version__
from faktsflow.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="faktsflow",
    help="Connect to a fakts service ecosystem and keep the session.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

from faktsflow.commands import session as _session  # noqa: E402

for _name, _command in (
    ("discover", _session.discover_command),
    ("connect", _session.connect_command),
    ("reconnect", _session.reconnect_command),
    ("disconnect", _session.disconnect_command),
    ("status", _session.status_command),
):
    app.command(_name)(_command)


def _show_version(value: bool) -> None:
    if not value:
        return
    typer.echo(f"faktsflow {__version__}")
    raise typer.Exit()


def _configure_logging(verbose: bool, quiet: bool) -> None:
    """Route the ``faktsflow`` logger to stderr via a single RichHandler."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING

    root = logging.getLogger("faktsflow")
    for stale in [h for h in root.handlers if isinstance(h, RichHandler)]:
        root.removeHandler(stale)
    root.addHandler(
        RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=verbose)
    )
    root.setLevel(level)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_show_version,
        is_eager=True,
        help="Print the faktsflow version.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Write results as JSON."),
    plain_output: bool = typer.Option(False, "--plain", help="Write results as tab-separated text."),
    no_color: bool = typer.Option(False, "--no-color", help="Turn off colours and styling."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print results and errors."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print debug messages and logs."),
) -> None:
    """Apply the global flags before a command runs.

    Without ``--json`` or ``--plain`` the ``output.format`` setting decides.
    """
    from faktsflow.config import resolve_config
    from faktsflow.output import OutputFormat, OutputManager, set_output

    flag = "json" if json_output else "plain" if plain_output else None
    config, _ = resolve_config(cli_format=flag)
    chosen = OutputFormat(config.output.format)
    set_output(OutputManager(format=chosen, no_color=no_color, quiet=quiet, verbose=verbose))
    _configure_logging(verbose, quiet)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def _exit_cancelled(*_: Any) -> None:
    sys.stderr.write("\nCancelled.\n")
    sys.exit(EXIT_CANCELLED)


def _save_crash_log() -> str:
    from faktsflow.config import get_data_dir

    directory = get_data_dir() / "logs"
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"crash-{datetime.now():%Y%m%d-%H%M%S}.log"
    target.write_text(traceback.format_exc(), encoding="utf-8")
    return str(target)


def main() -> None:
    """Run the CLI. Always ends in :class:`SystemExit`."""
    signal.signal(signal.SIGINT, _exit_cancelled)
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        _exit_cancelled()
    except Exception as exc:
        from faktsflow.exceptions import FaktsflowError
        from faktsflow.output import error

        if isinstance(exc, FaktsflowError):
            error(str(exc))
            sys.exit(exc.exit_code)
        error(f"Unexpected error. Debug log: {_save_crash_log()}")
        sys.exit(EXIT_GENERIC_FAILURE)
