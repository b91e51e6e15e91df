"""Configuration commands.

Example:
    $ launchpad config validate launchpad.yaml
    $ launchpad config show launchpad.yaml --output json
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from launchpad_core.cli.utils import error, info, resolve_config, success, warn
from launchpad_core.config import load_config
from launchpad_core.errors import ConfigurationError
from launchpad_core.schemas.config import LaunchpadConfig


def _warnings(config: LaunchpadConfig) -> list[str]:
    found = []
    for env in config.environments:
        if env.account_id is None:
            found.append(f"{env.name.value}: no account_id; authorization will always fail")
        if env.trust is None:
            found.append(f"{env.name.value}: no trust condition; authorization will always fail")
        if env.deploy_role is None:
            found.append(f"{env.name.value}: no deploy_role; authorization will always fail")
    if config.allow_interactive_override and not config.interactive:
        found.append("allow_interactive_override has no effect unless interactive is true")
    if config.auto_approve:
        found.append("auto_approve is on; no approval gate will wait for reviewers")
    return found


@click.group(name="config", help="Validate and inspect launchpad configuration.")
def config_group() -> None:
    """Configuration command group."""


@config_group.command(name="validate", help="Validate a launchpad.yaml file.")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--strict", is_flag=True, help="Treat warnings as errors.")
def validate_command(path: Path, strict: bool) -> None:
    try:
        config = load_config(path)
    except ConfigurationError as e:
        error(e.reason, path=str(path))
        sys.exit(e.exit_code)

    warnings = _warnings(config)
    for message in warnings:
        warn(message)
    if strict and warnings:
        error("Configuration has warnings", count=len(warnings))
        sys.exit(ConfigurationError.exit_code)
    success(f"Configuration valid: {path}")
    for env in config.environments:
        info(
            f"  {env.name.value:<8} reviewers={config.reviewer_count(env.name)} "
            f"auto_deploy={env.auto_deploy} account={env.account_id or '-'}"
        )


@config_group.command(name="show", help="Print the effective configuration.")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path), required=False)
def show_command(path: Path | None) -> None:
    try:
        config = resolve_config(path)
    except ConfigurationError as e:
        error(e.reason, path=str(path))
        sys.exit(e.exit_code)
    click.echo(json.dumps(config.model_dump(mode="json"), indent=2, sort_keys=True))


__all__: list[str] = ["config_group"]
