"""plugenv -- environment-scoped plugin manager.

An *environment* is a directory holding installed plugins: self-contained
command bundles described by a ``manifest.yaml``. plugenv installs them
and dispatches their commands, either through the shell or by exchanging
one JSON request/response envelope with the plugin over stdio. Stdio
plugins may hand back configuration mutations, which are merged into the
environment's ``plugenv.yaml`` or the plugin's own config file.

Typical workflow::

    plugenv --env ~/envs/dev plugin add ./fmt
    plugenv --env ~/envs/dev run fmt check -- --fix

Modules:
    app: Typer application and CLI entry point.
    dispatcher: Command dispatch and multi-step orchestration.
    executors: Shell and stdio executors.
    models: Pydantic models shared across the package.
    config: Environment layout and YAML/JSON persistence.
    exceptions: Exception hierarchy with exit-code mapping.
    output: stdout/stderr formatting with Rich support.
"""

__version__ = "0.1.0"
