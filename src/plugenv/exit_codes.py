"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~plugenv.exceptions.PlugenvError` subclass.
Shims and CI scripts can inspect the exit code to tell a missing plugin
from a failing one without parsing stderr.

Example::

    $ plugenv run fmt check
    $ echo $?
    6   # EXIT_EXECUTION_FAILURE -- the plugin command exited non-zero
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid or ambiguous arguments."""

EXIT_NOT_FOUND = 4
"""A plugin, command, manifest, or registry record was not found."""

EXIT_INVALID_MANIFEST = 5
"""The plugin manifest could not be decoded or failed validation."""

EXIT_EXECUTION_FAILURE = 6
"""A plugin process failed to start or exited non-zero."""

EXIT_PROTOCOL_ERROR = 7
"""A stdio plugin returned an undecodable or missing JSON response."""

EXIT_PERSIST_FAILURE = 8
"""Merged configuration could not be written back to disk."""

EXIT_CANCELED = 130
"""The dispatch was canceled or its deadline expired."""
