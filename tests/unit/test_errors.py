"""Unit tests for the exception hierarchy and CLI exit codes."""

from __future__ import annotations

import pytest

from launchpad_core.cli.utils import exit_code_for
from launchpad_core.errors import (
    AssertionVerificationError,
    CancellationNotSupportedError,
    ConfigurationError,
    ContextInvalidatedError,
    InvalidTransitionError,
    MalformedVersionError,
    PromotionError,
    RequestNotFoundError,
    ResolutionError,
    RoleAssumptionError,
    RollbackUnavailableError,
    SeparationOfDutiesError,
    TransientCollaboratorError,
)


class TestExitCodes:
    """Each error carries the exit code the CLI returns for it."""

    @pytest.mark.requirement("errors-exit-codes")
    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (PromotionError("boom"), 1),
            (TransientCollaboratorError("runner lost"), 1),
            (MalformedVersionError("1.2.0", "missing 'v' prefix"), 2),
            (RequestNotFoundError("abc"), 3),
            (RollbackUnavailableError("staging", "abc"), 3),
            (ConfigurationError("launchpad.yaml", "bad"), 5),
            (ResolutionError("v1.2.0", "no route"), 9),
            (InvalidTransitionError("created", "deployed"), 9),
            (CancellationNotSupportedError("abc", "deploying"), 9),
            (SeparationOfDutiesError("alice", "abc"), 11),
            (AssertionVerificationError("bad audience"), 12),
            (RoleAssumptionError("arn:aws:iam::1:role/x", "AccessDenied"), 12),
            (ContextInvalidatedError("prod"), 12),
        ],
    )
    def test_exit_code(self, error: PromotionError, code: int) -> None:
        assert error.exit_code == code
        assert exit_code_for(error) == code
        assert isinstance(error, PromotionError)

    @pytest.mark.requirement("errors-exit-codes")
    def test_foreign_exception_is_general_error(self) -> None:
        assert exit_code_for(RuntimeError("unexpected")) == 1


class TestMessages:
    """Tests for error messages and attributes."""

    @pytest.mark.requirement("errors-messages")
    def test_malformed_version(self) -> None:
        error = MalformedVersionError("1.2.0", "missing 'v' prefix")

        assert str(error) == "Malformed version '1.2.0': missing 'v' prefix"
        assert error.raw == "1.2.0"

    @pytest.mark.requirement("errors-messages")
    def test_invalid_transition_with_and_without_reason(self) -> None:
        assert str(InvalidTransitionError("created", "deployed")) == (
            "Invalid transition created -> deployed"
        )
        assert str(InvalidTransitionError("created", "deployed", "skips build")) == (
            "Invalid transition created -> deployed: skips build"
        )

    @pytest.mark.requirement("errors-messages")
    def test_cancellation_is_an_invalid_transition(self) -> None:
        error = CancellationNotSupportedError("abc", "deploying")

        assert isinstance(error, InvalidTransitionError)
        assert error.from_state == "deploying"
        assert error.to_state == "cancelled"
        assert "cannot be cancelled while deploying" in str(error)

    @pytest.mark.requirement("errors-messages")
    def test_expired_flag(self) -> None:
        assert AssertionVerificationError("token expired", expired=True).expired is True
        assert RoleAssumptionError("role", "ExpiredToken: gone", expired=True).expired is True
        assert RoleAssumptionError("role", "AccessDenied").expired is False
