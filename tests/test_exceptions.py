"""Tests for the exception hierarchy and exit codes."""

from __future__ import annotations

import pytest

from faktsflow.exceptions import (
    AuthorizationError,
    Cancelled,
    ClaimFailed,
    ConsentTimeout,
    DiscoveryUnreachable,
    FaktsflowError,
    InvalidUsageError,
    NoPersistedEndpoint,
    RequiredServiceResolutionFailed,
    ServiceResolutionError,
    SessionValidationFailed,
)
from faktsflow.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_INVALID_USAGE,
    EXIT_SERVICE_ERROR,
    EXIT_SESSION_ERROR,
)


class TestExitCodes:
    @pytest.mark.parametrize(
        ("exc_type", "code"),
        [
            (InvalidUsageError, EXIT_INVALID_USAGE),
            (DiscoveryUnreachable, EXIT_CONNECTION_ERROR),
            (ConsentTimeout, EXIT_AUTH_FAILURE),
            (ClaimFailed, EXIT_AUTH_FAILURE),
            (NoPersistedEndpoint, EXIT_SESSION_ERROR),
            (Cancelled, EXIT_CANCELLED),
        ],
    )
    def test_class_exit_code(self, exc_type: type[FaktsflowError], code: int) -> None:
        assert exc_type("boom").exit_code == code

    def test_exit_code_override(self) -> None:
        assert FaktsflowError("boom", exit_code=42).exit_code == 42

    def test_subclassing(self) -> None:
        assert issubclass(ConsentTimeout, AuthorizationError)
        assert issubclass(RequiredServiceResolutionFailed, ServiceResolutionError)


class TestStage:
    def test_str_without_stage(self) -> None:
        assert str(ClaimFailed("refused")) == "refused"

    def test_str_with_stage(self) -> None:
        exc = ClaimFailed("refused")
        exc.stage = "claiming"
        assert str(exc) == "[claiming] refused"


class TestStructuredErrors:
    def test_required_failure_carries_details(self) -> None:
        cause = RuntimeError("down")
        exc = RequiredServiceResolutionFailed("mikro", cause)
        assert exc.key == "mikro"
        assert exc.cause is cause
        assert exc.failures == {"mikro": cause}
        assert exc.unresolved == []
        assert "mikro" in str(exc)

    def test_session_validation_failed_record(self) -> None:
        exc = SessionValidationFailed("bad", "fakts")
        assert exc.record == "fakts"
        assert exc.exit_code == EXIT_SESSION_ERROR
