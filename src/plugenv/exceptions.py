"""Exception hierarchy for plugenv.

All exceptions inherit from :class:`PlugenvError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`plugenv.exit_codes`.
The top-level error handler in :func:`plugenv.app.main` catches
``PlugenvError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Errors raised by a dispatch also carry ``log_file`` -- the path of the
per-run JSONL log -- so callers can point users at the postmortem.

Subclass hierarchy::

    PlugenvError (exit 1)
    +-- InvalidUsageError          (exit 2)
    +-- AmbiguousPluginError       (exit 2)
    +-- NotFoundError              (exit 4)
    |   +-- PluginNotFoundError
    |   +-- CommandNotFoundError
    |   +-- ManifestNotFoundError
    +-- ManifestParseError         (exit 5)
    +-- ManifestInvalidError       (exit 5)
    +-- UnsupportedExecutorError   (exit 5)
    +-- ExecutionError             (exit 6)
    |   +-- StepFailedError
    +-- ProtocolError              (exit 7)
    +-- MutationPersistError       (exit 8)
    +-- CanceledError              (exit 130)
    +-- ConfigError                (exit 1)
    +-- RegistryError              (exit 1)
        +-- DuplicatePluginError
"""

from __future__ import annotations

from typing import Optional

from plugenv.exit_codes import (
    EXIT_CANCELED,
    EXIT_EXECUTION_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_MANIFEST,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_PERSIST_FAILURE,
    EXIT_PROTOCOL_ERROR,
)


class PlugenvError(Exception):
    """Base exception for all plugenv errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`plugenv.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code
        self.log_file: Optional[str] = None


class InvalidUsageError(PlugenvError):
    """Raised for invalid CLI arguments or missing required parameters."""

    exit_code = EXIT_INVALID_USAGE


class AmbiguousPluginError(PlugenvError):
    """Raised when a logical plugin name matches more than one installed plugin."""

    exit_code = EXIT_INVALID_USAGE


class NotFoundError(PlugenvError):
    """Base class for lookups that found nothing."""

    exit_code = EXIT_NOT_FOUND


class PluginNotFoundError(NotFoundError):
    """Raised when no plugin directory can be resolved for an identifier."""


class CommandNotFoundError(NotFoundError):
    """Raised when a manifest declares no command with the requested name."""


class ManifestNotFoundError(NotFoundError):
    """Raised when a plugin directory holds none of the recognised manifest files."""


class ManifestParseError(PlugenvError):
    """Raised when a manifest file cannot be decoded into the manifest shape."""

    exit_code = EXIT_INVALID_MANIFEST


class ManifestInvalidError(PlugenvError):
    """Raised when a decoded manifest violates a structural rule."""

    exit_code = EXIT_INVALID_MANIFEST


class UnsupportedExecutorError(PlugenvError):
    """Raised when a command or step names an executor other than shell or stdio."""

    exit_code = EXIT_INVALID_MANIFEST


class ExecutionError(PlugenvError):
    """Raised when a plugin process fails to start, exits non-zero, or reports an error status."""

    exit_code = EXIT_EXECUTION_FAILURE


class StepFailedError(ExecutionError):
    """Raised when a step of a multi-step command fails and policy does not tolerate it.

    Args:
        index: Zero-based position of the failing step.
        cause: The underlying step error (execution or protocol failure).
    """

    def __init__(self, index: int, cause: PlugenvError):
        super().__init__(f"step {index} failed: {cause}")
        self.index = index
        self.cause = cause


class ProtocolError(PlugenvError):
    """Raised when a stdio plugin's response is missing or is not valid JSON."""

    exit_code = EXIT_PROTOCOL_ERROR


class MutationPersistError(PlugenvError):
    """Raised when merged configuration cannot be written back. Never tolerated."""

    exit_code = EXIT_PERSIST_FAILURE


class CanceledError(PlugenvError):
    """Raised when the dispatch deadline expires or the dispatch is canceled."""

    exit_code = EXIT_CANCELED


class ConfigError(PlugenvError):
    """Raised for configuration problems (unreadable or malformed config files)."""

    exit_code = EXIT_GENERIC_FAILURE


class RegistryError(PlugenvError):
    """Raised when the installed-plugin registry cannot be read or written."""

    exit_code = EXIT_GENERIC_FAILURE


class DuplicatePluginError(RegistryError):
    """Raised when installing would give two install names the same logical name."""
