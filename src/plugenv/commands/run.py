"""Run command -- dispatch a command of an installed plugin.

``plugenv run PLUGIN COMMAND [ARGS]...`` resolves *PLUGIN* by install
name or logical name and runs *COMMAND* from its manifest. Arguments
after the command name (use ``--`` before any that look like options)
are passed through to the plugin.
"""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any, Iterator, List, Optional

import typer

from plugenv.cancellation import Deadline
from plugenv.commands import env_dir_from, fail
from plugenv.exceptions import InvalidUsageError, PlugenvError
from plugenv.merge import MergeStrategy
from plugenv.output import OutputFormat, debug, get_output, print_json, success, warning


@contextmanager
def _cancel_on_interrupt(deadline: Deadline) -> Iterator[None]:
    """Turn Ctrl-C into a cancellation of *deadline* while the block runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        deadline.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_command(
    ctx: typer.Context,
    plugin: str = typer.Argument(help="Install name or logical name of the plugin."),
    command: str = typer.Argument(help="Command name from the plugin manifest."),
    args: Optional[List[str]] = typer.Argument(
        None, help="Arguments passed through to the plugin."
    ),
    merge: MergeStrategy = typer.Option(
        MergeStrategy.OVERRIDE,
        "--merge",
        "-m",
        case_sensitive=False,
        help="How global config mutations are merged.",
    ),
    keep_going: bool = typer.Option(
        False, "--keep-going", "-k", help="Continue past failed steps."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Abort the whole dispatch after SECONDS."
    ),
) -> None:
    """Run a plugin command.

    Multi-step commands stop at the first failing step unless the step
    sets ``continue_on_error`` or ``--keep-going`` is given. Ctrl-C
    stops the running plugin process and exits with code 130.

    Args:
        ctx: Typer context carrying the environment root.
        plugin: Plugin identifier.
        command: Command to run.
        args: Pass-through arguments.
        merge: Merge strategy for global config mutations.
        keep_going: Tolerate step failures.
        timeout: Deadline for the whole dispatch, in seconds.

    Example::

        plugenv run fmt check
        plugenv run tools build --merge append -- --release
        plugenv run ci pipeline --keep-going --timeout 600
    """
    from plugenv.dispatcher import Dispatcher

    try:
        if timeout is not None and timeout <= 0:
            raise InvalidUsageError("--timeout must be greater than zero")
        deadline = Deadline(timeout)
        with _cancel_on_interrupt(deadline):
            result = Dispatcher(env_dir_from(ctx)).dispatch(
                plugin,
                command,
                args or [],
                strategy=merge,
                keep_going=keep_going,
                deadline=deadline,
            )
    except PlugenvError as exc:
        fail(exc)

    if get_output().format == OutputFormat.JSON:
        print_json(asdict(result))
        return

    for step in result.failed_steps:
        warning(f"Step {step.index} failed: {step.error}")
    success(f"{result.install_name} {result.command}: ok ({result.duration_ms} ms)")
    debug(f"Log: {result.log_file}")
