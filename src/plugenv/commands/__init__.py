"""Built-in CLI sub-commands for plugenv.

* :mod:`~plugenv.commands.run` -- dispatch a plugin command.
* :mod:`~plugenv.commands.plugin` -- install, list, inspect, and remove
  plugins.

Each module either exports a :class:`typer.Typer` sub-application (for
multi-command groups like ``plugin``) or a plain callback function
registered directly on the root app (for single commands like ``run``).
"""

from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import typer

from plugenv.exceptions import PlugenvError
from plugenv.output import error, suggest


def env_dir_from(ctx: typer.Context) -> Path:
    """The environment root resolved by the root callback."""
    from plugenv.config import resolve_env_dir

    obj = ctx.obj or {}
    return obj.get("env_dir") or resolve_env_dir()


def fail(exc: PlugenvError) -> NoReturn:
    """Report *exc* on stderr and exit with its exit code."""
    error(str(exc))
    if exc.log_file:
        suggest(f"Details: {exc.log_file}")
    raise typer.Exit(code=exc.exit_code)
