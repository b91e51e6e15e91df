"""Main entry point for the launchpad CLI.

Command Groups:
    launchpad release: Tag classification, plans and next-tag computation
    launchpad requests: Inspect persisted promotion requests
    launchpad config: Validate and show configuration

Commands:
    launchpad authorize: Pre-flight authorization chain for an environment

Example:
    $ launchpad --help
    $ launchpad release plan v1.2.1-hotfix.1
    $ launchpad --log-level DEBUG authorize prod --config launchpad.yaml
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

import click

from launchpad_core.cli.authorize import authorize_command
from launchpad_core.cli.config_cmd import config_group
from launchpad_core.cli.release import release
from launchpad_core.cli.requests import requests_group
from launchpad_core.cli.utils import exit_code_for
from launchpad_core.telemetry.logging import configure_logging


def _get_version() -> str:
    """Package version, or 'unknown' if not installed."""
    try:
        return get_version("launchpad-core")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="launchpad",
    help="launchpad - release promotion and cross-account deployment authorization.",
    epilog="Use 'launchpad <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="launchpad",
    message="%(prog)s %(version)s",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Minimum log level written to stderr.",
)
@click.option("--json-logs", is_flag=True, help="Write logs as JSON lines.")
@click.pass_context
def cli(ctx: click.Context, log_level: str, json_logs: bool) -> None:
    """Root command group for the launchpad CLI."""
    ctx.ensure_object(dict)
    configure_logging(log_level, json_output=json_logs)


cli.add_command(release)
cli.add_command(requests_group)
cli.add_command(config_group)
cli.add_command(authorize_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the launchpad CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(exit_code_for(e))


if __name__ == "__main__":
    main()
