"""In-process stand-ins for the systems launchpad drives.

Importable from any test module (``tests`` is on the pytest pythonpath):

    from fakes import FakeBuilder, make_config, wait_until
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from launchpad_core.collaborators import (
    ApplyOutcome,
    BudgetStatus,
    BuildOutcome,
    TestOutcome,
)
from launchpad_core.schemas.authorization import AuthorizationContext, SessionCredentials
from launchpad_core.schemas.config import (
    EnvironmentConfig,
    EnvironmentName,
    LaunchpadConfig,
    RetryConfig,
    TrustCondition,
)
from launchpad_core.schemas.version import Version

ISSUER = "https://token.actions.githubusercontent.com"
AUDIENCE = "sts.amazonaws.com"
SUBJECT = "repo:acme/site:ref:refs/heads/main"
KEY_ID = "test-key-1"
CENTRAL_ACCOUNT = "100000000000"
CENTRAL_ROLE = f"arn:aws:iam::{CENTRAL_ACCOUNT}:role/launchpad-central"

ACCOUNTS: dict[EnvironmentName, str] = {
    EnvironmentName.DEV: "111111111111",
    EnvironmentName.STAGING: "222222222222",
    EnvironmentName.PROD: "333333333333",
}


def deploy_role(environment: EnvironmentName) -> str:
    return f"arn:aws:iam::{ACCOUNTS[environment]}:role/launchpad-deploy"


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def sign_token(
    key: Any,
    *,
    kid: str | None = KEY_ID,
    expires_in: int = 300,
    algorithm: str = "RS256",
    drop: tuple[str, ...] = (),
    **claims: Any,
) -> str:
    """Signed assertion with default claims; keyword arguments replace claims."""
    now = int(time.time())
    payload: dict[str, Any] = {
        "iss": ISSUER,
        "aud": AUDIENCE,
        "sub": SUBJECT,
        "exp": now + expires_in,
        "iat": now,
    }
    payload.update(claims)
    for name in drop:
        payload.pop(name, None)
    headers = {"kid": kid} if kid is not None else None
    return jwt.encode(payload, key, algorithm=algorithm, headers=headers)


# =============================================================================
# Configuration
# =============================================================================


def environment_config(
    name: EnvironmentName,
    reviewer_count: int,
    auto_deploy: bool,
) -> EnvironmentConfig:
    return EnvironmentConfig(
        name=name,
        reviewer_count=reviewer_count,
        auto_deploy=auto_deploy,
        account_id=ACCOUNTS[name],
        deploy_role=deploy_role(name),
        trust=TrustCondition(
            expected_audience=AUDIENCE,
            subject_pattern="repo:acme/site:*",
            expected_issuer=ISSUER,
        ),
    )


def make_config(**overrides: Any) -> LaunchpadConfig:
    """Fully bound configuration with instant retries."""
    values: dict[str, Any] = {
        "environments": [
            environment_config(EnvironmentName.DEV, 0, True),
            environment_config(EnvironmentName.STAGING, 1, True),
            environment_config(EnvironmentName.PROD, 2, False),
        ],
        "central_role": CENTRAL_ROLE,
        "retry": RetryConfig(initial_delay_ms=0, jitter=False),
        "max_workers": 4,
    }
    values.update(overrides)
    return LaunchpadConfig(**values)


# =============================================================================
# Identity
# =============================================================================


class FakeIdentityProvider:
    """Issues a freshly signed assertion per call."""

    def __init__(self, key: Any) -> None:
        self._key = key
        self.claims: dict[str, Any] = {}
        self.error: Exception | None = None
        self.audiences: list[str] = []

    def issue_assertion(self, audience: str) -> str:
        if self.error is not None:
            raise self.error
        self.audiences.append(audience)
        claims = {"aud": audience or AUDIENCE, **self.claims}
        return sign_token(self._key, **claims)


def make_session(account: str, role: str, *, expires_in: int = 3600) -> SessionCredentials:
    return SessionCredentials(
        access_key_id="ASIAEXAMPLEEXAMPLE00",
        secret_access_key="secret",
        session_token="token",
        expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        account_id=account,
        principal_arn=f"arn:aws:sts::{account}:assumed-role/{role.rsplit('/', 1)[-1]}/test",
    )


class FakeRoleAssumer:
    """Role assumer whose environment sessions land in the role's account.

    ``observed`` maps a deploy role to the account the identity query should
    report instead, simulating a misconfigured role.
    """

    def __init__(self) -> None:
        self.central_account = CENTRAL_ACCOUNT
        self.observed: dict[str, str] = {}
        self.central_error: Exception | None = None
        self.environment_error: Exception | None = None
        self.identity_error: Exception | None = None
        self.expired_environment_session = False
        self.calls: list[str] = []

    def assume_central(self, assertion: str) -> SessionCredentials:
        self.calls.append("central")
        if self.central_error is not None:
            raise self.central_error
        return make_session(self.central_account, CENTRAL_ROLE)

    def assume_environment(self, central: SessionCredentials, role: str) -> SessionCredentials:
        self.calls.append("environment")
        if self.environment_error is not None:
            raise self.environment_error
        account = self.observed.get(role, role.split(":")[4])
        expires_in = -60 if self.expired_environment_session else 3600
        return make_session(account, role, expires_in=expires_in)

    def caller_account(self, session: SessionCredentials) -> str:
        self.calls.append("identity")
        if self.identity_error is not None:
            raise self.identity_error
        return session.account_id or ""


# =============================================================================
# Collaborators
# =============================================================================


class _Blocking:
    """Holds each call while ``block`` is set.

    A held call returns once ``release`` is set or its cancel event fires.
    With ``ignore_cancel`` the call only returns on ``release``, like a
    collaborator that cannot be interrupted.
    """

    def __init__(self) -> None:
        self.block = False
        self.ignore_cancel = False
        self.started = threading.Event()
        self.release = threading.Event()

    def _hold(self, cancel_event: threading.Event) -> bool:
        """Wait per the blocking flags; True if the call observed its cancel."""
        self.started.set()
        if not self.block:
            return False
        deadline = time.monotonic() + 5.0
        while not self.release.is_set() and time.monotonic() < deadline:
            if cancel_event.is_set() and not self.ignore_cancel:
                return True
            self.release.wait(0.01)
        return cancel_event.is_set() and not self.ignore_cancel


class FakeBuilder(_Blocking):
    """Returns queued outcomes (or raises queued exceptions), then succeeds."""

    def __init__(self) -> None:
        super().__init__()
        self.outcomes: list[BuildOutcome | Exception] = []
        self.calls: list[tuple[str, EnvironmentName]] = []

    def build(
        self,
        version: Version,
        environment: EnvironmentName,
        cancel_event: threading.Event,
    ) -> BuildOutcome:
        self.calls.append((version.raw, environment))
        if self._hold(cancel_event):
            return BuildOutcome(success=False, error="build cancelled")
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return BuildOutcome(
            success=True,
            artifact_ref=f"artifact:{version.raw}:{environment.value}",
        )


class FakeTester(_Blocking):
    def __init__(self) -> None:
        super().__init__()
        self.outcomes: list[TestOutcome | Exception] = []
        self.calls: list[str] = []

    def test(
        self,
        artifact_ref: str,
        environment: EnvironmentName,
        cancel_event: threading.Event,
    ) -> TestOutcome:
        self.calls.append(artifact_ref)
        if self._hold(cancel_event):
            return TestOutcome(passed=False, error="tests cancelled")
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return TestOutcome(passed=True, report_ref=f"report:{artifact_ref}")


class FakeApplier:
    """Records (artifact, environment, session account) per apply.

    Tracks the peak number of concurrent applies per environment. ``release``
    holds every apply until set; ``barrier`` makes applies wait for each other.
    """

    def __init__(self) -> None:
        self.outcomes: list[ApplyOutcome | Exception] = []
        self.applied: list[tuple[str, EnvironmentName, str]] = []
        self.delay = 0.0
        self.barrier: threading.Barrier | None = None
        self.release: threading.Event | None = None
        self.started = threading.Event()
        self.peak: dict[EnvironmentName, int] = {}
        self._running: dict[EnvironmentName, int] = {}
        self._lock = threading.Lock()

    def apply(
        self,
        artifact_ref: str,
        context: AuthorizationContext,
        environment: EnvironmentName,
    ) -> ApplyOutcome:
        account = context.environment_session.account_id or ""
        with self._lock:
            self._running[environment] = self._running.get(environment, 0) + 1
            self.peak[environment] = max(self.peak.get(environment, 0), self._running[environment])
        try:
            self.started.set()
            if self.release is not None:
                self.release.wait(5.0)
            if self.barrier is not None:
                self.barrier.wait()
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                self.applied.append((artifact_ref, environment, account))
                outcome = self.outcomes.pop(0) if self.outcomes else None
            if isinstance(outcome, Exception):
                raise outcome
            if outcome is not None:
                return outcome
            return ApplyOutcome(success=True, deployed_state_ref=f"state:{artifact_ref}")
        finally:
            with self._lock:
                self._running[environment] -= 1


class FakeCost:
    def __init__(self, status: BudgetStatus = BudgetStatus.HEALTHY) -> None:
        self.status = status
        self.error: Exception | None = None

    def check(self, environment: EnvironmentName) -> BudgetStatus:
        if self.error is not None:
            raise self.error
        return self.status


__all__ = [
    "ACCOUNTS",
    "AUDIENCE",
    "CENTRAL_ACCOUNT",
    "CENTRAL_ROLE",
    "ISSUER",
    "KEY_ID",
    "SUBJECT",
    "FakeApplier",
    "FakeBuilder",
    "FakeCost",
    "FakeIdentityProvider",
    "FakeRoleAssumer",
    "FakeTester",
    "deploy_role",
    "environment_config",
    "make_config",
    "make_session",
    "sign_token",
    "wait_until",
]
