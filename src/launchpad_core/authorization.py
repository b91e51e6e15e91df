"""Cross-account deployment authorization.

The chain proves a run may act against one environment's account:

1. **Assertion**: verify the CI identity assertion's signature and expiry.
2. **Central hop**: the assertion's audience, issuer and subject must match
   the environment's trust condition; then assume the central role.
3. **Environment hop**: assume the environment deploy role from the central
   session and independently ask which account the new session lives in.
4. **Mismatch guard**: if that account differs from the configured one the
   chain fails closed. Only an interactive run with
   ``allow_interactive_override`` may proceed, after one explicit operator
   confirmation. Mismatches are audited at CRITICAL either way.

There are no retries across hops. A failed chain is re-run from a fresh
assertion, never resumed.

Example:
    >>> verifier = AuthorizationChainVerifier(
    ...     config,
    ...     assertion_verifier=AssertionVerifier(jwks_url=JWKS_URL),
    ...     role_assumer=StsRoleAssumer(config.central_role),
    ...     identity_provider=provider,
    ... )
    >>> with verifier.authorization_scope("prod", actor="release-bot") as decision:
    ...     if decision.authorized:
    ...         apply(artifact, decision.context)
"""

from __future__ import annotations

import concurrent.futures
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from fnmatch import fnmatchcase
from uuid import UUID

import structlog

from launchpad_core.assertions import AssertionVerifier
from launchpad_core.audit import AuditTrail
from launchpad_core.collaborators import (
    IdentityFederationProvider,
    OperatorConfirmation,
    RoleAssumer,
)
from launchpad_core.errors import AssertionVerificationError, RoleAssumptionError
from launchpad_core.schemas.authorization import (
    AuthorizationContext,
    AuthorizationDecision,
    AuthorizationHop,
    SessionCredentials,
)
from launchpad_core.schemas.config import EnvironmentConfig, EnvironmentName, LaunchpadConfig
from launchpad_core.schemas.promotion import ErrorKind
from launchpad_core.telemetry.sanitization import sanitize_error_message
from launchpad_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class _ChainFailure(Exception):
    """Internal short-circuit carrying a denial out of a hop."""

    def __init__(
        self,
        kind: ErrorKind,
        hop: AuthorizationHop,
        reason: str,
        *,
        observed_account: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.kind = kind
        self.hop = hop
        self.reason = reason
        self.observed_account = observed_account


def _unexpected(kind: ErrorKind, hop: AuthorizationHop, error: Exception) -> _ChainFailure:
    """Denial for a collaborator that raised something other than its documented error."""
    logger.exception("authorization_step_raised", hop=hop.value)
    message = sanitize_error_message(str(error))
    reason = f"{type(error).__name__}: {message}" if message else type(error).__name__
    return _ChainFailure(kind, hop, f"{hop.value} step raised {reason}")


class AuthorizationChainVerifier:
    """Runs the two-hop authorization chain for an environment.

    Attributes:
        config: Engine configuration (environments, interactive policy).
        assertion_verifier: Checks assertion signatures.
        role_assumer: Performs role hops and identity queries.
        identity_provider: Issues fresh assertions for authorization_scope().
        confirm: Operator confirmation callback for interactive overrides.
        audit: Receives every decision.
    """

    def __init__(
        self,
        config: LaunchpadConfig,
        *,
        assertion_verifier: AssertionVerifier,
        role_assumer: RoleAssumer,
        identity_provider: IdentityFederationProvider | None = None,
        confirm: OperatorConfirmation | None = None,
        audit: AuditTrail | None = None,
    ) -> None:
        """Initialize AuthorizationChainVerifier.

        Args:
            config: Engine configuration.
            assertion_verifier: Checks assertion signatures.
            role_assumer: Performs role hops and identity queries.
            identity_provider: Issues fresh assertions.
            confirm: Operator confirmation callback.
            audit: Audit trail; defaults to a structlog-backed trail.
        """
        self.config = config
        self.assertion_verifier = assertion_verifier
        self.role_assumer = role_assumer
        self.identity_provider = identity_provider
        self.confirm = confirm
        self.audit = audit if audit is not None else AuditTrail()

    @contextmanager
    def authorization_scope(
        self,
        environment: EnvironmentName | str,
        *,
        actor: str,
        request_id: UUID | None = None,
    ) -> Iterator[AuthorizationDecision]:
        """Authorize with a fresh assertion; invalidate the context on exit.

        The context must not escape the ``with`` block.

        Raises:
            ValueError: If no identity provider is configured.
        """
        if self.identity_provider is None:
            raise ValueError("authorization_scope requires an identity provider")
        env = self.config.environment(environment)
        audience = env.trust.expected_audience if env.trust is not None else ""
        decision: AuthorizationDecision | None = None
        try:
            try:
                assertion = self.identity_provider.issue_assertion(audience)
            except Exception as e:
                decision = self._deny(
                    env,
                    _ChainFailure(
                        ErrorKind.CLAIM_MISMATCH,
                        AuthorizationHop.ASSERTION,
                        f"identity provider failed: {sanitize_error_message(str(e))}",
                    ),
                    actor=actor,
                    request_id=request_id,
                )
            else:
                decision = self.verify(assertion, env.name, actor=actor, request_id=request_id)
            yield decision
        finally:
            if decision is not None and decision.context is not None:
                decision.context.invalidate()

    def verify(
        self,
        assertion: str,
        environment: EnvironmentName | str,
        *,
        actor: str = "launchpad",
        request_id: UUID | None = None,
    ) -> AuthorizationDecision:
        """Run the full chain for ``environment`` with ``assertion``.

        Never raises for a denial; every outcome is an AuthorizationDecision,
        and every decision is audited.
        """
        env = self.config.environment(environment)
        log = logger.bind(environment=env.name.value, request_id=str(request_id))

        with create_span(
            "launchpad.authorization.verify",
            attributes={"launchpad.environment": env.name.value},
        ) as span:
            try:
                decision = self._run_chain(assertion, env, actor=actor, request_id=request_id)
            except _ChainFailure as failure:
                span.set_attribute("launchpad.authorization.failure", failure.kind.value)
                return self._deny(env, failure, actor=actor, request_id=request_id)

            span.set_attribute("launchpad.authorization.authorized", True)
            log.info(
                "authorization_granted",
                account_id=decision.observed_account,
                mismatch_overridden=decision.mismatch_overridden,
            )
            self.audit.authorization(decision, actor=actor, request_id=request_id)
            return decision

    def _deny(
        self,
        env: EnvironmentConfig,
        failure: _ChainFailure,
        *,
        actor: str,
        request_id: UUID | None,
    ) -> AuthorizationDecision:
        decision = AuthorizationDecision(
            authorized=False,
            environment=env.name,
            failure_kind=failure.kind,
            reason=failure.reason,
            hop=failure.hop,
            expected_account=env.account_id,
            observed_account=failure.observed_account,
        )
        log_fn = logger.critical if failure.kind == ErrorKind.ACCOUNT_MISMATCH else logger.warning
        log_fn(
            "authorization_denied",
            environment=env.name.value,
            request_id=str(request_id),
            failure_kind=failure.kind.value,
            hop=failure.hop.value,
            reason=failure.reason,
        )
        self.audit.authorization(decision, actor=actor, request_id=request_id)
        return decision

    def _run_chain(
        self,
        assertion: str,
        env: EnvironmentConfig,
        *,
        actor: str,
        request_id: UUID | None,
    ) -> AuthorizationDecision:
        # Hop 0: assertion
        if env.trust is None:
            raise _ChainFailure(
                ErrorKind.CLAIM_MISMATCH,
                AuthorizationHop.ASSERTION,
                f"no trust condition configured for {env.name.value}",
            )
        try:
            claims = self.assertion_verifier.verify(assertion)
        except AssertionVerificationError as e:
            kind = ErrorKind.SESSION_EXPIRED if e.expired else ErrorKind.CLAIM_MISMATCH
            raise _ChainFailure(kind, AuthorizationHop.ASSERTION, e.reason) from e
        except Exception as e:
            raise _unexpected(ErrorKind.CLAIM_MISMATCH, AuthorizationHop.ASSERTION, e) from e

        # Hop 1: central
        trust = env.trust
        if claims.audience != trust.expected_audience:
            raise _ChainFailure(
                ErrorKind.CLAIM_MISMATCH,
                AuthorizationHop.CENTRAL,
                f"audience '{claims.audience}' does not match '{trust.expected_audience}'",
            )
        if trust.expected_issuer is not None and claims.issuer != trust.expected_issuer:
            raise _ChainFailure(
                ErrorKind.CLAIM_MISMATCH,
                AuthorizationHop.CENTRAL,
                f"issuer '{claims.issuer}' does not match '{trust.expected_issuer}'",
            )
        if not fnmatchcase(claims.subject, trust.subject_pattern):
            raise _ChainFailure(
                ErrorKind.CLAIM_MISMATCH,
                AuthorizationHop.CENTRAL,
                f"subject '{claims.subject}' does not match '{trust.subject_pattern}'",
            )

        central = self._hop(
            AuthorizationHop.CENTRAL, lambda: self.role_assumer.assume_central(assertion)
        )
        if env.allowed_source_accounts and central.account_id not in env.allowed_source_accounts:
            raise _ChainFailure(
                ErrorKind.ROLE_ASSUMPTION_DENIED,
                AuthorizationHop.CENTRAL,
                f"central session account '{central.account_id}' is not an allowed source",
            )

        # Hop 2: environment
        deploy_role = env.deploy_role
        if deploy_role is None:
            raise _ChainFailure(
                ErrorKind.ROLE_ASSUMPTION_DENIED,
                AuthorizationHop.ENVIRONMENT,
                f"no deploy role configured for {env.name.value}",
            )
        env_session = self._hop(
            AuthorizationHop.ENVIRONMENT,
            lambda: self.role_assumer.assume_environment(central, deploy_role),
        )
        observed = self._identity(env_session)

        # Mismatch guard
        overridden = False
        if env.account_id is None or observed != env.account_id:
            overridden = self._resolve_mismatch(env, observed, actor=actor, request_id=request_id)

        context = AuthorizationContext(
            environment=env.name,
            claims=claims,
            account_id=observed,
            mismatch_overridden=overridden,
            central_session=central,
            environment_session=env_session,
        )
        return AuthorizationDecision(
            authorized=True,
            environment=env.name,
            context=context,
            reason="account mismatch confirmed by operator" if overridden else None,
            hop=AuthorizationHop.ACCOUNT_CHECK,
            expected_account=env.account_id,
            observed_account=observed,
            mismatch_overridden=overridden,
        )

    def _hop(
        self,
        hop: AuthorizationHop,
        call: Callable[[], SessionCredentials],
    ) -> SessionCredentials:
        try:
            session = call()
        except RoleAssumptionError as e:
            kind = ErrorKind.SESSION_EXPIRED if e.expired else ErrorKind.ROLE_ASSUMPTION_DENIED
            raise _ChainFailure(kind, hop, str(e)) from e
        except Exception as e:
            raise _unexpected(ErrorKind.ROLE_ASSUMPTION_DENIED, hop, e) from e
        if session.is_expired():
            raise _ChainFailure(
                ErrorKind.SESSION_EXPIRED, hop, f"{hop.value} session expired at {session.expiry}"
            )
        return session

    def _identity(self, session: SessionCredentials) -> str:
        try:
            return self.role_assumer.caller_account(session)
        except RoleAssumptionError as e:
            kind = ErrorKind.SESSION_EXPIRED if e.expired else ErrorKind.ROLE_ASSUMPTION_DENIED
            raise _ChainFailure(kind, AuthorizationHop.ACCOUNT_CHECK, str(e)) from e
        except Exception as e:
            raise _unexpected(
                ErrorKind.ROLE_ASSUMPTION_DENIED, AuthorizationHop.ACCOUNT_CHECK, e
            ) from e

    def _resolve_mismatch(
        self,
        env: EnvironmentConfig,
        observed: str,
        *,
        actor: str,
        request_id: UUID | None,
    ) -> bool:
        """Return True if an operator confirmed the mismatch, else fail closed."""
        reason = (
            f"environment session is in account '{observed}' but {env.name.value} "
            f"expects '{env.account_id}'"
            if env.account_id is not None
            else f"no expected account configured for {env.name.value}"
        )
        confirm = self.confirm
        if (
            confirm is None
            or env.account_id is None
            or not self.config.interactive
            or not self.config.allow_interactive_override
        ):
            raise _ChainFailure(
                ErrorKind.ACCOUNT_MISMATCH,
                AuthorizationHop.ACCOUNT_CHECK,
                reason,
                observed_account=observed,
            )

        logger.critical(
            "account_mismatch_confirmation_requested",
            environment=env.name.value,
            expected_account=env.account_id,
            observed_account=observed,
        )
        if not self._ask_operator(confirm, env, observed):
            raise _ChainFailure(
                ErrorKind.ACCOUNT_MISMATCH,
                AuthorizationHop.ACCOUNT_CHECK,
                f"{reason}; operator did not confirm",
                observed_account=observed,
            )

        logger.critical(
            "account_mismatch_overridden",
            environment=env.name.value,
            expected_account=env.account_id,
            observed_account=observed,
            actor=actor,
        )
        self.audit.mismatch_override(
            actor=actor,
            environment=env.name.value,
            expected_account=env.account_id,
            observed_account=observed,
            request_id=request_id,
        )
        return True

    def _ask_operator(
        self,
        confirm: OperatorConfirmation,
        env: EnvironmentConfig,
        observed: str,
    ) -> bool:
        timeout = self.config.mismatch_confirmation_timeout_seconds
        if timeout is None:
            # Blocks until the operator answers.
            return self._confirmed(confirm, env, observed)

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="launchpad-confirm"
        )
        try:
            future = executor.submit(self._confirmed, confirm, env, observed)
            try:
                return future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                logger.warning(
                    "account_mismatch_confirmation_timeout",
                    environment=env.name.value,
                    timeout_seconds=timeout,
                )
                return False
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _confirmed(confirm: OperatorConfirmation, env: EnvironmentConfig, observed: str) -> bool:
        try:
            return confirm(env.name, env.account_id, observed) is True
        except Exception:
            logger.exception("account_mismatch_confirmation_failed", environment=env.name.value)
            return False


__all__ = ["AuthorizationChainVerifier"]
