"""Exception hierarchy for faktsflow.

All exceptions inherit from :class:`FaktsflowError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`faktsflow.exit_codes`
and an optional ``stage`` naming the connection stage that failed. The
orchestrator fills in ``stage`` before re-raising, so callers get the
original exception type with stage context attached.

Subclass hierarchy::

    FaktsflowError (exit 1)
    +-- InvalidUsageError                 (exit 2)
    +-- ConfigError                       (exit 1)
    +-- DiscoveryError                    (exit 6)
    |   +-- DiscoveryUnreachable
    |   +-- DiscoveryInvalidResponse
    +-- AuthorizationError                (exit 3)
    |   +-- AuthorizationStartFailed
    |   +-- ConsentSurfaceUnavailable
    |   +-- ConsentTimeout
    |   +-- ConsentRejected
    |   +-- ClaimFailed
    |   +-- TokenExchangeFailed
    +-- ServiceResolutionError            (exit 5)
    |   +-- NoReachableAlias
    |   +-- RequiredServiceResolutionFailed
    |   +-- ServiceNotAvailable
    |   +-- ServiceRequestError
    +-- SessionError                      (exit 4)
    |   +-- SessionValidationFailed
    |   +-- NoPersistedEndpoint
    +-- Cancelled                         (exit 130)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from faktsflow.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_SERVICE_ERROR,
    EXIT_SESSION_ERROR,
)

if TYPE_CHECKING:
    from faktsflow.models import UnresolvedService


class FaktsflowError(Exception):
    """Base exception for all faktsflow errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`faktsflow.exit_codes`. The CLI entry point
    catches this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.stage: Optional[str] = None
        if exit_code is not None:
            self.exit_code = exit_code

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class InvalidUsageError(FaktsflowError):
    """Raised for invalid arguments, such as a URL that cannot be normalised."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(FaktsflowError):
    """Raised for configuration problems (invalid JSON, unknown service kinds)."""

    exit_code = EXIT_GENERIC_FAILURE


# --- Discovery ---


class DiscoveryError(FaktsflowError):
    """Base class for endpoint discovery failures."""

    exit_code = EXIT_CONNECTION_ERROR


class DiscoveryUnreachable(DiscoveryError):
    """Raised when the discovery query times out or the host cannot be reached."""


class DiscoveryInvalidResponse(DiscoveryError):
    """Raised when the discovery response is not a valid endpoint descriptor."""


# --- Authorization ---


class AuthorizationError(FaktsflowError):
    """Base class for handshake, claim and token exchange failures."""

    exit_code = EXIT_AUTH_FAILURE


class AuthorizationStartFailed(AuthorizationError):
    """Raised when the endpoint refuses to issue a device code."""


class ConsentSurfaceUnavailable(AuthorizationError):
    """Raised when no consent surface is configured or it fails to open."""


class ConsentTimeout(AuthorizationError):
    """Raised when the challenge poll budget is exhausted without a decision."""


class ConsentRejected(AuthorizationError):
    """Raised when the user explicitly denies the device code."""


class ClaimFailed(AuthorizationError):
    """Raised when the issued token is rejected or the claimed fakts are invalid."""


class TokenExchangeFailed(AuthorizationError):
    """Raised when the token endpoint rejects the claimed client credentials."""


# --- Services ---


class ServiceResolutionError(FaktsflowError):
    """Base class for failures while resolving or building services."""

    exit_code = EXIT_SERVICE_ERROR


class NoReachableAlias(ServiceResolutionError):
    """Raised when none of an instance's aliases answered its challenge in time."""


class RequiredServiceResolutionFailed(ServiceResolutionError):
    """Raised when a non-optional service failed during the resolution fan-out.

    Args:
        key: Key of the first failing required service, in declared order.
        cause: The exception that service raised.
        failures: Every failure of the batch, keyed by service key.
        unresolved: Optional services that failed in the same batch.
    """

    def __init__(
        self,
        key: str,
        cause: BaseException,
        failures: dict[str, BaseException] | None = None,
        unresolved: list[UnresolvedService] | None = None,
    ):
        super().__init__(f"Required service '{key}' could not be resolved: {cause}")
        self.key = key
        self.cause = cause
        self.failures = failures or {key: cause}
        self.unresolved = unresolved or []


class ServiceNotAvailable(ServiceResolutionError):
    """Raised when asking the connected context for a service it does not hold."""


class ServiceRequestError(ServiceResolutionError):
    """Raised when a built service client gets an error answer from its service."""


# --- Session ---


class SessionError(FaktsflowError):
    """Base class for problems with the persisted session."""

    exit_code = EXIT_SESSION_ERROR


class SessionValidationFailed(SessionError):
    """Raised when a persisted record does not match its schema.

    Args:
        message: Human-readable description.
        record: Storage key of the offending record.
    """

    def __init__(self, message: str, record: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.record = record


class NoPersistedEndpoint(SessionError):
    """Raised by an explicit reconnect when no endpoint has ever been stored."""


class Cancelled(FaktsflowError):
    """Raised when the caller's cancel token fires during an operation."""

    exit_code = EXIT_CANCELLED
