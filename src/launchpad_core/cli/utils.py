"""CLI utility functions and error handling.

This module provides shared utilities for the launchpad CLI, including:
- Exit code constants matching the engine's exception hierarchy
- Output helpers for consistent stderr/stdout usage
- The interactive account-mismatch confirmation prompt

Errors are written as plain text to stderr with a non-zero exit code so CI
pipelines can branch on them.

Example:
    from launchpad_core.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("Config not found", exit_code=ExitCode.NOT_FOUND, path=str(path))
"""

from __future__ import annotations

import sys
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING

import click

from launchpad_core.config import load_config
from launchpad_core.errors import PromotionError
from launchpad_core.schemas.config import EnvironmentName, LaunchpadConfig

if TYPE_CHECKING:
    from typing import NoReturn

MISMATCH_CONFIRMATION_WORD = "CONTINUE"


class ExitCode(IntEnum):
    """Exit codes for CLI commands.

    Values match ``exit_code`` on the exceptions in launchpad_core.errors.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    MALFORMED_VERSION = 2
    """Release identifier does not match the tag grammar."""

    NOT_FOUND = 3
    """Request, rollback target or file not found."""

    CONFIGURATION_ERROR = 5
    """Configuration missing or invalid."""

    INVALID_TRANSITION = 9
    """Resolution failure or illegal state change."""

    SEPARATION_OF_DUTIES = 11
    """Requester attempted to approve their own request."""

    AUTHORIZATION_ERROR = 12
    """Authorization chain denied the run."""


def exit_code_for(exc: BaseException) -> int:
    """CLI exit code for an engine exception."""
    if isinstance(exc, PromotionError):
        return exc.exit_code
    return ExitCode.GENERAL_ERROR


def _with_context(prefix: str, message: str, context: dict[str, str | int | bool | None]) -> str:
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    if context_str:
        return f"{prefix}: {message} ({context_str})"
    return f"{prefix}: {message}"


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Request not found", request_id="...")
        # Output: Error: Request not found (request_id=...)
    """
    click.echo(_with_context("Error", message, context), err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with ``exit_code``.

    Raises:
        SystemExit: Always.
    """
    error(message, **context)
    sys.exit(int(exit_code))


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    click.echo(_with_context("Warning", message, context), err=True)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr.

    Used for progress and status lines that should not be captured by
    stdout redirection.
    """
    click.echo(message, err=True)


def resolve_config(path: Path | None) -> LaunchpadConfig:
    """Load ``path``, or the default configuration when no file is given.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    if path is None:
        return LaunchpadConfig()
    return load_config(path)


def confirm_account_mismatch(
    environment: EnvironmentName,
    expected_account: str | None,
    observed_account: str,
) -> bool:
    """Ask the operator to confirm deploying into an unexpected account.

    Only typing the confirmation word exactly counts as a yes; anything else,
    including an empty answer or end of input, is a no.
    """
    click.echo("", err=True)
    click.secho("ACCOUNT MISMATCH", fg="red", bold=True, err=True)
    click.echo(f"  Environment:      {environment.value}", err=True)
    click.echo(f"  Expected account: {expected_account}", err=True)
    click.echo(f"  Session account:  {observed_account}", err=True)
    click.echo(
        "Proceeding would act against the wrong account's resources. "
        "This decision is audited.",
        err=True,
    )
    try:
        answer = click.prompt(
            f"Type '{MISMATCH_CONFIRMATION_WORD}' to proceed",
            default="",
            show_default=False,
            err=True,
        )
    except click.Abort:
        return False
    return answer.strip() == MISMATCH_CONFIRMATION_WORD


__all__ = [
    "MISMATCH_CONFIRMATION_WORD",
    "ExitCode",
    "confirm_account_mismatch",
    "error",
    "error_exit",
    "exit_code_for",
    "info",
    "resolve_config",
    "success",
    "warn",
]
