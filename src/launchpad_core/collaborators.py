"""Interfaces of the systems the engine drives but does not implement.

Build, test, apply, cost, identity federation, role assumption and operator
confirmation are all injected. Implementations report ordinary failures
through their outcome objects; an implementation may also raise
TransientCollaboratorError for a retryable infrastructure failure. Any other
exception is treated as a non-transient failure.

CollaboratorHandle pairs a collaborator call running on the collaborator
pool with the cancel event passed into it, so the state machine can signal
cooperative cancellation and then wait for the call's terminal result.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from enum import Enum
from typing import Generic, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from launchpad_core.schemas.authorization import AuthorizationContext, SessionCredentials
from launchpad_core.schemas.config import EnvironmentName
from launchpad_core.schemas.version import Version

T = TypeVar("T")


# =============================================================================
# Outcomes
# =============================================================================


class BuildOutcome(BaseModel):
    """Result of building a version for an environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool = Field(..., description="Build succeeded")
    artifact_ref: str | None = Field(default=None, description="Built artifact reference")
    error: str | None = Field(default=None, description="Failure detail")
    transient: bool = Field(default=False, description="Failure may succeed on retry")


class TestOutcome(BaseModel):
    """Result of testing a built artifact."""

    __test__ = False  # keep pytest from collecting this model

    model_config = ConfigDict(frozen=True, extra="forbid")

    passed: bool = Field(..., description="All tests passed")
    report_ref: str | None = Field(default=None, description="Test report reference")
    error: str | None = Field(default=None, description="Failure detail")
    transient: bool = Field(default=False, description="Failure may succeed on retry")


class ApplyOutcome(BaseModel):
    """Result of applying an artifact to an environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool = Field(..., description="Apply succeeded")
    deployed_state_ref: str | None = Field(default=None, description="Deployed state reference")
    error: str | None = Field(default=None, description="Failure detail")


class BudgetStatus(str, Enum):
    """Cost collaborator verdict for an environment."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class IdentityFederationProvider(Protocol):
    """Issues signed identity assertions for the current run."""

    def issue_assertion(self, audience: str) -> str: ...


@runtime_checkable
class RoleAssumer(Protocol):
    """Performs the two role hops and the independent identity query.

    Implementations raise RoleAssumptionError when a hop is refused, with
    ``expired=True`` when the refusal is due to expired credentials.
    """

    def assume_central(self, assertion: str) -> SessionCredentials: ...

    def assume_environment(
        self,
        central: SessionCredentials,
        role: str,
    ) -> SessionCredentials: ...

    def caller_account(self, session: SessionCredentials) -> str: ...


@runtime_checkable
class OperatorConfirmation(Protocol):
    """Asks an operator to confirm proceeding past an account mismatch.

    Returns True only on explicit confirmation.
    """

    def __call__(
        self,
        environment: EnvironmentName,
        expected_account: str | None,
        observed_account: str,
    ) -> bool: ...


@runtime_checkable
class BuildCollaborator(Protocol):
    def build(
        self,
        version: Version,
        environment: EnvironmentName,
        cancel_event: threading.Event,
    ) -> BuildOutcome: ...


@runtime_checkable
class TestCollaborator(Protocol):
    def test(
        self,
        artifact_ref: str,
        environment: EnvironmentName,
        cancel_event: threading.Event,
    ) -> TestOutcome: ...


@runtime_checkable
class ApplyCollaborator(Protocol):
    """Applies an artifact using the environment-scoped credentials.

    Never interrupted once started.
    """

    def apply(
        self,
        artifact_ref: str,
        context: AuthorizationContext,
        environment: EnvironmentName,
    ) -> ApplyOutcome: ...


@runtime_checkable
class CostCollaborator(Protocol):
    def check(self, environment: EnvironmentName) -> BudgetStatus: ...


# =============================================================================
# Handles
# =============================================================================


class CollaboratorHandle(Generic[T]):
    """A collaborator call in flight plus its cooperative cancel signal."""

    def __init__(self, future: Future[T], cancel_event: threading.Event) -> None:
        self.future = future
        self.cancel_event = cancel_event

    def cancel(self) -> None:
        """Ask the collaborator to stop; the call still runs to a result."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def result(self, timeout: float | None = None) -> T:
        """Wait for the collaborator's terminal result (re-raises its error)."""
        return self.future.result(timeout=timeout)


__all__ = [
    "ApplyCollaborator",
    "ApplyOutcome",
    "BudgetStatus",
    "BuildCollaborator",
    "BuildOutcome",
    "CollaboratorHandle",
    "CostCollaborator",
    "IdentityFederationProvider",
    "OperatorConfirmation",
    "RoleAssumer",
    "TestCollaborator",
    "TestOutcome",
]
