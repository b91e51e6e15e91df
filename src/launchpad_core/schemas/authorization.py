"""Authorization chain schemas.

Key Components:
    AssertionClaims: Verified claims of a federated identity assertion
    SessionCredentials: Time-boxed credentials returned by a role hop
    AuthorizationContext: Short-lived credential holder for one deployment
    AuthorizationHop: Step of the chain a decision was made at
    AuthorizationDecision: Result of running the chain

AuthorizationContext is a plain class rather than a Pydantic model: it is never
serialized or persisted, and it is invalidated in place when its scope exits.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from launchpad_core.errors import ContextInvalidatedError
from launchpad_core.schemas.config import EnvironmentName
from launchpad_core.schemas.promotion import ErrorKind


class AssertionClaims(BaseModel):
    """Verified claims of an identity assertion.

    Examples:
        >>> claims = AssertionClaims(
        ...     issuer="https://token.actions.githubusercontent.com",
        ...     audience="sts.amazonaws.com",
        ...     subject="repo:acme/site:ref:refs/heads/main",
        ...     expiry=datetime(2030, 1, 1, tzinfo=timezone.utc),
        ... )
        >>> claims.subject
        'repo:acme/site:ref:refs/heads/main'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    issuer: str = Field(..., description="iss claim")
    audience: str = Field(..., description="aud claim")
    subject: str = Field(..., description="sub claim")
    expiry: datetime = Field(..., description="exp claim (UTC)")


class SessionCredentials(BaseModel):
    """Temporary credentials issued by a role assumption.

    Secret material is held as SecretStr so it never appears in reprs or logs.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    access_key_id: str = Field(..., min_length=1, description="Access key id")
    secret_access_key: SecretStr = Field(..., description="Secret access key")
    session_token: SecretStr = Field(..., description="Session token")
    expiry: datetime = Field(..., description="Credential expiry (UTC)")
    account_id: str | None = Field(default=None, description="Account the session lives in")
    principal_arn: str | None = Field(default=None, description="Assumed principal")

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the credentials are past their expiry."""
        current = now or datetime.now(timezone.utc)
        return current >= self.expiry


class AuthorizationHop(str, Enum):
    """Step of the authorization chain."""

    ASSERTION = "assertion"
    CENTRAL = "central"
    ENVIRONMENT = "environment"
    ACCOUNT_CHECK = "account_check"


class AuthorizationContext:
    """Credentials proving a run may deploy to one environment.

    Accessors raise ContextInvalidatedError once :meth:`invalidate` has run.

    Attributes:
        environment: Environment the context was issued for.
        claims: Verified assertion claims.
        account_id: Account the environment session was confirmed to be in.
        mismatch_overridden: An operator confirmed past an account mismatch.
    """

    def __init__(
        self,
        environment: EnvironmentName,
        claims: AssertionClaims,
        account_id: str,
        *,
        central_session: SessionCredentials,
        environment_session: SessionCredentials,
        mismatch_overridden: bool = False,
    ) -> None:
        self.environment = environment
        self.claims = claims
        self.account_id = account_id
        self.mismatch_overridden = mismatch_overridden
        self._central_session: SessionCredentials | None = central_session
        self._environment_session: SessionCredentials | None = environment_session
        self._invalidated = False

    def __repr__(self) -> str:
        return (
            f"AuthorizationContext(environment={self.environment.value!r}, "
            f"account_id={self.account_id!r}, invalidated={self._invalidated})"
        )

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    @property
    def central_session(self) -> SessionCredentials:
        """Session from the first hop."""
        return self._require(self._central_session)

    @property
    def environment_session(self) -> SessionCredentials:
        """Session from the second hop, used to apply changes."""
        return self._require(self._environment_session)

    def invalidate(self) -> None:
        """Drop all credentials. Safe to call more than once."""
        self._central_session = None
        self._environment_session = None
        self._invalidated = True

    def _require(self, session: SessionCredentials | None) -> SessionCredentials:
        if self._invalidated or session is None:
            raise ContextInvalidatedError(self.environment.value)
        return session


class AuthorizationDecision(BaseModel):
    """Result of running the authorization chain for one environment.

    Attributes:
        authorized: Whether deployment may proceed.
        environment: Target environment.
        context: Live credentials when authorized, else None.
        failure_kind: Failure classification when not authorized.
        reason: Explanation for denials and overrides.
        hop: Chain step the decision was made at.
        expected_account: Account configured for the environment.
        observed_account: Account the environment session reported.
        mismatch_overridden: An operator confirmed past an account mismatch.
        checked_at: Decision time (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    authorized: bool = Field(..., description="Whether deployment may proceed")
    environment: EnvironmentName = Field(..., description="Target environment")
    context: AuthorizationContext | None = Field(default=None, exclude=True, repr=False)
    failure_kind: ErrorKind | None = Field(default=None, description="Failure kind")
    reason: str | None = Field(default=None, description="Denial or override detail")
    hop: AuthorizationHop = Field(..., description="Chain step of the decision")
    expected_account: str | None = Field(default=None, description="Configured account")
    observed_account: str | None = Field(default=None, description="Queried account")
    mismatch_overridden: bool = Field(default=False, description="Operator override used")
    checked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Decision time (UTC)",
    )

    def audit_details(self) -> dict[str, Any]:
        """Decision fields safe to write to the audit trail."""
        return self.model_dump(mode="json", exclude={"context", "checked_at"})


__all__ = [
    "AssertionClaims",
    "AuthorizationContext",
    "AuthorizationDecision",
    "AuthorizationHop",
    "SessionCredentials",
]
