"""boto3 STS implementation of the RoleAssumer interface.

Hop 1 exchanges the CI identity assertion for a central session with
``AssumeRoleWithWebIdentity``. Hop 2 uses that session to ``AssumeRole``
into the environment's deploy role. The account behind the environment
session is then confirmed with ``GetCallerIdentity``, independently of
anything the role ARN claims.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from launchpad_core.errors import RoleAssumptionError
from launchpad_core.schemas.authorization import SessionCredentials
from launchpad_core.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

_EXPIRED_ERROR_CODES = frozenset(
    {"ExpiredToken", "ExpiredTokenException", "RequestExpired", "TokenRefreshRequired"}
)

ClientFactory = Callable[..., Any]


def _account_from_arn(arn: str | None) -> str | None:
    # arn:aws:sts::<account>:assumed-role/<role>/<session>
    if not arn:
        return None
    parts = arn.split(":")
    return parts[4] if len(parts) > 5 and parts[4] else None


class StsRoleAssumer:
    """Role assumer backed by AWS STS.

    Attributes:
        central_role_arn: Role assumed with the identity assertion.
        session_name: RoleSessionName recorded in CloudTrail.
        duration_seconds: Requested session lifetime.
    """

    def __init__(
        self,
        central_role_arn: str,
        *,
        region_name: str | None = None,
        session_name: str = "launchpad-deploy",
        duration_seconds: int = 3600,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Initialize StsRoleAssumer.

        Args:
            central_role_arn: Role assumed with the identity assertion.
            region_name: STS region; boto3's default resolution when None.
            session_name: RoleSessionName for both hops.
            duration_seconds: Requested session lifetime.
            client_factory: Replacement for ``boto3.client`` (tests).
        """
        self.central_role_arn = central_role_arn
        self.session_name = session_name
        self.duration_seconds = duration_seconds
        self._region_name = region_name
        self._client_factory = client_factory or boto3.client

    def _client(self, session: SessionCredentials | None = None) -> Any:
        kwargs: dict[str, Any] = {}
        if self._region_name:
            kwargs["region_name"] = self._region_name
        if session is not None:
            kwargs.update(
                aws_access_key_id=session.access_key_id,
                aws_secret_access_key=session.secret_access_key.get_secret_value(),
                aws_session_token=session.session_token.get_secret_value(),
            )
        return self._client_factory("sts", **kwargs)

    @staticmethod
    def _to_session(response: dict[str, Any]) -> SessionCredentials:
        creds = response["Credentials"]
        arn = response.get("AssumedRoleUser", {}).get("Arn")
        return SessionCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiry=creds["Expiration"],
            account_id=_account_from_arn(arn),
            principal_arn=arn,
        )

    @staticmethod
    def _error(role: str, error: Exception) -> RoleAssumptionError:
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            message = error.response.get("Error", {}).get("Message", str(error))
            return RoleAssumptionError(
                role,
                f"{code}: {sanitize_error_message(message)}",
                expired=code in _EXPIRED_ERROR_CODES,
            )
        return RoleAssumptionError(role, sanitize_error_message(str(error)))

    def assume_central(self, assertion: str) -> SessionCredentials:
        """Exchange the identity assertion for the central session."""
        try:
            response = self._client().assume_role_with_web_identity(
                RoleArn=self.central_role_arn,
                RoleSessionName=self.session_name,
                WebIdentityToken=assertion,
                DurationSeconds=self.duration_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("central_role_assumption_failed", role=self.central_role_arn)
            raise self._error(self.central_role_arn, e) from e
        session = self._to_session(response)
        logger.info(
            "central_role_assumed",
            role=self.central_role_arn,
            account_id=session.account_id,
        )
        return session

    def assume_environment(self, central: SessionCredentials, role: str) -> SessionCredentials:
        """Assume the environment deploy role from the central session."""
        try:
            response = self._client(central).assume_role(
                RoleArn=role,
                RoleSessionName=self.session_name,
                DurationSeconds=self.duration_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("environment_role_assumption_failed", role=role)
            raise self._error(role, e) from e
        session = self._to_session(response)
        logger.info("environment_role_assumed", role=role)
        return session

    def caller_account(self, session: SessionCredentials) -> str:
        """Ask STS which account ``session`` belongs to."""
        try:
            identity = self._client(session).get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            logger.warning("caller_identity_failed", principal=session.principal_arn)
            raise self._error(session.principal_arn or "caller-identity", e) from e
        return str(identity["Account"])


__all__ = ["StsRoleAssumer"]
