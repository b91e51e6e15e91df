"""Pre-flight authorization command.

Runs the full authorization chain for one environment without deploying:
verify the identity assertion, assume the central role, assume the
environment's deploy role and confirm the account behind the session. Useful
as the first step of a CI deploy job, where a mismatch must stop the job.

Example:
    $ launchpad authorize prod --config launchpad.yaml \\
        --jwks-url https://token.actions.githubusercontent.com/.well-known/jwks \\
        --assertion-file "$RUNNER_TEMP/id-token"
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
import structlog

from launchpad_core.assertions import AssertionVerifier
from launchpad_core.audit import AuditTrail
from launchpad_core.authorization import AuthorizationChainVerifier
from launchpad_core.cli.utils import (
    ExitCode,
    confirm_account_mismatch,
    error,
    error_exit,
    info,
    resolve_config,
    success,
)
from launchpad_core.config import get_operator_identity
from launchpad_core.errors import ConfigurationError
from launchpad_core.schemas.config import ENVIRONMENT_ORDER
from launchpad_core.sts import StsRoleAssumer

logger = structlog.get_logger(__name__)


@click.command(
    name="authorize",
    help="Run the cross-account authorization chain for an environment.",
    epilog="""
Exit Codes:
    0  - Authorized
    5  - Invalid configuration
    12 - Authorization denied
""",
)
@click.argument("environment", type=click.Choice(list(ENVIRONMENT_ORDER)))
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to launchpad.yaml.",
    metavar="PATH",
)
@click.option(
    "--jwks-url",
    envvar="LAUNCHPAD_JWKS_URL",
    required=True,
    help="Identity provider JWKS URL. Env: LAUNCHPAD_JWKS_URL.",
    metavar="URL",
)
@click.option(
    "--assertion-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="File holding the identity assertion.",
    metavar="PATH",
)
@click.option(
    "--assertion",
    envvar="LAUNCHPAD_ID_TOKEN",
    default=None,
    help="Identity assertion. Env: LAUNCHPAD_ID_TOKEN.",
    metavar="TOKEN",
)
@click.option("--region", default=None, help="STS region.", metavar="REGION")
@click.option(
    "--operator",
    "-o",
    default=None,
    help="Operator identity. Defaults to $LAUNCHPAD_OPERATOR or $USER.",
    metavar="IDENTITY",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def authorize_command(
    environment: str,
    config_path: Path | None,
    jwks_url: str,
    assertion_file: Path | None,
    assertion: str | None,
    region: str | None,
    operator: str | None,
    output: str,
) -> None:
    """Run the authorization chain and report the decision.

    Args:
        environment: Target environment.
        config_path: Path to launchpad.yaml.
        jwks_url: Where to fetch the provider's signing keys.
        assertion_file: File holding the assertion.
        assertion: The assertion itself.
        region: STS region.
        operator: Operator identity.
        output: Output format (table or json).
    """
    try:
        config = resolve_config(config_path)
    except ConfigurationError as e:
        error(e.reason, path=str(config_path))
        sys.exit(e.exit_code)
    if config.central_role is None:
        error_exit("central_role is not configured", exit_code=ExitCode.CONFIGURATION_ERROR)

    token = assertion_file.read_text(encoding="utf-8").strip() if assertion_file else assertion
    if not token:
        error_exit(
            "An identity assertion is required (--assertion-file or LAUNCHPAD_ID_TOKEN)",
            exit_code=ExitCode.CONFIGURATION_ERROR,
        )

    actor = operator or get_operator_identity()
    verifier = AuthorizationChainVerifier(
        config,
        assertion_verifier=AssertionVerifier(jwks_url),
        role_assumer=StsRoleAssumer(config.central_role, region_name=region),
        confirm=confirm_account_mismatch if config.interactive else None,
        audit=AuditTrail(),
    )
    logger.info("authorize_command_started", environment=environment, operator=actor)
    decision = verifier.verify(token, environment, actor=actor)
    if decision.context is not None:
        decision.context.invalidate()

    if output == "json":
        click.echo(json.dumps(decision.model_dump(mode="json"), indent=2))
    elif decision.authorized:
        success(f"Authorized for {environment} (account {decision.observed_account})")
        if decision.mismatch_overridden:
            info("  Account mismatch confirmed by operator")
    else:
        error(
            decision.reason or "authorization denied",
            failure=decision.failure_kind.value if decision.failure_kind else None,
            hop=decision.hop.value,
        )

    if not decision.authorized:
        sys.exit(ExitCode.AUTHORIZATION_ERROR)


__all__: list[str] = ["authorize_command"]
