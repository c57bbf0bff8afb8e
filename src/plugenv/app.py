"""Typer application and CLI entry point for plugenv.

This module wires together the top-level Typer application and registers
the built-in sub-commands (``run`` and the ``plugin`` group).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer
app. Unhandled exceptions are written to a crash log under the
environment's ``.plugenv/logs`` directory.

See Also:
    :mod:`plugenv.config`: Environment root resolution.
    :mod:`plugenv.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer

from plugenv import __version__
from plugenv.commands.plugin import plugin_app
from plugenv.commands.run import run_command
from plugenv.exit_codes import EXIT_CANCELED, EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="plugenv",
    help="Install plugins into an environment and run their commands.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

app.command("run", context_settings={"ignore_unknown_options": True})(run_command)
app.add_typer(plugin_app, name="plugin", help="Plugin management.")

# Environment root of the current invocation, for crash logs.
_active_env: Optional[Path] = None


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"plugenv {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    env: Optional[str] = typer.Option(
        None, "--env", "-e", help="Environment directory (default: $PLUGENV_HOME or cwd)."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~plugenv.output.OutputManager` from
    CLI flags and stores the resolved environment root in the Typer
    context so that sub-commands can read it via ``ctx.obj``.

    Args:
        ctx: Typer invocation context.
        version: If ``True``, print the version string and exit.
        env: Environment root override (highest precedence).
        json_output: Force JSON output format.
        plain_output: Force plain-text output format.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential diagnostic output.
        verbose: Enable debug-level diagnostic output.
    """
    from plugenv.config import resolve_env_dir
    from plugenv.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    ctx.ensure_object(dict)
    global _active_env
    _active_env = resolve_env_dir(env)
    ctx.obj["env_dir"] = _active_env


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C outside a dispatch exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path.

    Args:
        exc: The unhandled exception to log.

    Returns:
        Absolute path to the written crash log file.
    """
    from plugenv.config import EnvLayout, resolve_env_dir

    logs_dir = EnvLayout.of(_active_env or resolve_env_dir()).logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``plugenv`` console script.

    Unhandled :class:`~plugenv.exceptions.PlugenvError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions
    produce a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELED)
    except Exception as exc:
        from plugenv.exceptions import PlugenvError
        from plugenv.output import error

        if isinstance(exc, PlugenvError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
