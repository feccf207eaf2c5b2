"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~faktsflow.exceptions.FaktsflowError` subclass.
Shell wrappers can inspect the exit code of ``faktsflow connect`` to tell a
rejected consent apart from an unreachable endpoint without parsing stderr.

Example::

    $ faktsflow connect https://go.arkitekt.live
    $ echo $?
    6   # EXIT_CONNECTION_ERROR -- the endpoint could not be discovered
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or an unusable URL."""

EXIT_AUTH_FAILURE = 3
"""The authorization handshake, claim or token exchange failed."""

EXIT_SESSION_ERROR = 4
"""No usable persisted session exists (missing or corrupted records)."""

EXIT_SERVICE_ERROR = 5
"""A required service could not be resolved or built."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred while discovering the endpoint."""

EXIT_CANCELLED = 130
"""The operation was cancelled by the user (Ctrl-C)."""
