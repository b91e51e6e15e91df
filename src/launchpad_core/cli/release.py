"""Release tag commands.

Commands:
    launchpad release classify: Parse a tag and show its variant
    launchpad release plan: Show the promotion plan for a tag
    launchpad release next: Compute the next tag for a bump

Example:
    $ launchpad release classify v1.2.0-rc1
    $ launchpad release plan v1.2.1-hotfix.1 --config launchpad.yaml
    $ launchpad release next --current v1.2.0 --bump rc --existing v1.3.0-rc1
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click
import structlog

from launchpad_core.cli.utils import error, info, resolve_config, success
from launchpad_core.errors import PromotionError
from launchpad_core.resolver import EnvironmentResolver
from launchpad_core.schemas.promotion import PromotionPlan
from launchpad_core.schemas.version import Version
from launchpad_core.versioning import custom_version, next_version, parse_version

logger = structlog.get_logger(__name__)

_OUTPUT_OPTION = click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)


def _version_dict(version: Version) -> dict[str, Any]:
    return {
        "raw": version.raw,
        "variant": version.variant.value,
        "major": version.major,
        "minor": version.minor,
        "patch": version.patch,
        "number": version.number,
        "prerelease": version.is_prerelease,
    }


def _plan_dict(plan: PromotionPlan) -> dict[str, Any]:
    return {
        "version": _version_dict(plan.version),
        "steps": [
            {
                "environment": step.environment.value,
                "reviewer_count": step.policy.reviewer_count,
                "auto_deploy": step.policy.auto_deploy,
                "trigger": step.policy.trigger.value,
                "expedited": step.policy.expedited,
            }
            for step in plan.steps
        ],
    }


def _format_plan_table(plan: PromotionPlan) -> str:
    lines = [
        f"Promotion plan: {plan.version.raw} ({plan.version.variant.value})",
        "=" * 50,
    ]
    for index, step in enumerate(plan.steps, start=1):
        policy = step.policy
        flags = [policy.trigger.value]
        if policy.auto_deploy:
            flags.append("auto-deploy")
        if policy.expedited:
            flags.append("expedited")
        lines.append(
            f"  {index}. {step.environment.value:<8} "
            f"reviewers={policy.reviewer_count}  [{', '.join(flags)}]"
        )
    return "\n".join(lines)


def _fail(e: PromotionError) -> None:
    error(str(e))
    sys.exit(e.exit_code)


@click.group(name="release", help="Release tag classification and planning.")
def release() -> None:
    """Release tag command group."""


@release.command(name="classify", help="Parse a release tag and show its variant.")
@click.argument("tag")
@_OUTPUT_OPTION
def classify_command(tag: str, output: str) -> None:
    try:
        version = parse_version(tag)
    except PromotionError as e:
        _fail(e)
        return

    if output == "json":
        click.echo(json.dumps(_version_dict(version), indent=2))
        return
    success(f"{version.raw}: {version.variant.value}")
    info(f"  Base:       v{version.major}.{version.minor}.{version.patch}")
    if version.number is not None:
        info(f"  Sequence:   {version.number}")
    info(f"  Prerelease: {'yes' if version.is_prerelease else 'no'}")


@release.command(
    name="plan",
    help="Show the promotion plan a release tag resolves to.",
    epilog="""
Examples:
    $ launchpad release plan v2.0.0
    $ launchpad release plan my-branch-build --custom --target dev

Exit Codes:
    0  - Success
    2  - Malformed tag
    5  - Invalid configuration
    9  - No plan for the tag
""",
)
@click.argument("tag")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to launchpad.yaml. Uses the default policy if omitted.",
    metavar="PATH",
)
@click.option("--custom", is_flag=True, help="Treat TAG as an opaque custom version.")
@click.option("--target", default=None, help="Target environment for custom versions.")
@_OUTPUT_OPTION
def plan_command(
    tag: str,
    config_path: Path | None,
    custom: bool,
    target: str | None,
    output: str,
) -> None:
    try:
        config = resolve_config(config_path)
        version = custom_version(tag) if custom else parse_version(tag)
        plan = EnvironmentResolver(config).resolve(version, target=target)
    except PromotionError as e:
        _fail(e)
        return

    logger.debug("plan_command_resolved", tag=tag, steps=len(plan.steps))
    if output == "json":
        click.echo(json.dumps(_plan_dict(plan), indent=2))
    else:
        click.echo(_format_plan_table(plan))


@release.command(name="next", help="Compute the next release tag.")
@click.option("--current", default=None, help="Latest existing tag.", metavar="TAG")
@click.option(
    "--bump",
    type=click.Choice(["major", "minor", "patch", "rc", "hotfix"]),
    required=True,
    help="Which part of the version to advance.",
)
@click.option(
    "--existing",
    multiple=True,
    help="Existing tag used to number rc/hotfix sequences (repeatable).",
    metavar="TAG",
)
def next_command(current: str | None, bump: str, existing: tuple[str, ...]) -> None:
    try:
        version = next_version(current, bump, existing)  # type: ignore[arg-type]
    except PromotionError as e:
        _fail(e)
        return
    success(version.raw)


__all__: list[str] = ["release"]
