"""Shared pytest fixtures for launchpad-core tests.

Wires the engine to the in-process fakes in ``fakes.py``: an RSA-signed
identity provider with a static JWKS, a role assumer mapping deploy roles to
accounts, and recording build/test/apply/cost collaborators.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest
import structlog
from cryptography.hazmat.primitives.asymmetric import rsa
from fakes import (
    KEY_ID,
    FakeApplier,
    FakeBuilder,
    FakeCost,
    FakeIdentityProvider,
    FakeRoleAssumer,
    FakeTester,
    make_config,
    sign_token,
)
from jwt.algorithms import RSAAlgorithm

from launchpad_core.assertions import AssertionVerifier
from launchpad_core.audit import AuditTrail, InMemoryAuditSink
from launchpad_core.authorization import AuthorizationChainVerifier
from launchpad_core.schemas.config import LaunchpadConfig
from launchpad_core.state_machine import PromotionStateMachine

if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Undo logging configuration done by CLI commands."""
    yield
    structlog.reset_defaults()


# =============================================================================
# Identity
# =============================================================================


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(signing_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk.update({"kid": KEY_ID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def make_token(signing_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Sign an assertion with the test key; keyword overrides replace claims."""

    def _make(**kwargs: Any) -> str:
        kwargs.setdefault("key", signing_key)
        key = kwargs.pop("key")
        return sign_token(key, **kwargs)

    return _make


@pytest.fixture
def identity_provider(signing_key: rsa.RSAPrivateKey) -> FakeIdentityProvider:
    return FakeIdentityProvider(signing_key)


@pytest.fixture
def assertion_verifier(jwks: dict[str, Any]) -> AssertionVerifier:
    return AssertionVerifier(jwks=jwks)


@pytest.fixture
def role_assumer() -> FakeRoleAssumer:
    return FakeRoleAssumer()


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture
def config() -> LaunchpadConfig:
    return make_config()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def tester() -> FakeTester:
    return FakeTester()


@pytest.fixture
def applier() -> FakeApplier:
    return FakeApplier()


@pytest.fixture
def cost() -> FakeCost:
    return FakeCost()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def make_verifier(
    assertion_verifier: AssertionVerifier,
    role_assumer: FakeRoleAssumer,
    identity_provider: FakeIdentityProvider,
    audit_sink: InMemoryAuditSink,
) -> Callable[..., AuthorizationChainVerifier]:
    """Factory for verifiers sharing the test's fakes and audit sink."""

    def _make(config: LaunchpadConfig, **kwargs: Any) -> AuthorizationChainVerifier:
        kwargs.setdefault("identity_provider", identity_provider)
        return AuthorizationChainVerifier(
            config,
            assertion_verifier=assertion_verifier,
            role_assumer=role_assumer,
            audit=AuditTrail(audit_sink),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_machine(
    make_verifier: Callable[..., AuthorizationChainVerifier],
    builder: FakeBuilder,
    tester: FakeTester,
    applier: FakeApplier,
    cost: FakeCost,
) -> Generator[Callable[..., PromotionStateMachine], None, None]:
    """Factory for started state machines; all are shut down after the test."""
    machines: list[PromotionStateMachine] = []

    def _make(config: LaunchpadConfig | None = None, **kwargs: Any) -> PromotionStateMachine:
        cfg = config or make_config()
        kwargs.setdefault("cost", cost)
        machine = PromotionStateMachine(
            cfg,
            verifier=make_verifier(cfg),
            builder=builder,
            tester=tester,
            applier=applier,
            **kwargs,
        )
        machine.start()
        machines.append(machine)
        return machine

    yield _make
    for machine in machines:
        machine.shutdown()


@pytest.fixture
def machine(make_machine: Callable[..., PromotionStateMachine]) -> PromotionStateMachine:
    return make_machine()
