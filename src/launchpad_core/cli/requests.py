"""Promotion request inspection commands.

Reads the request records a state machine persisted through
SqlRequestStore.

Commands:
    launchpad requests list: List requests, optionally by state
    launchpad requests show: Show one request with its history
    launchpad requests chain: Show every request of a chain

Example:
    $ launchpad requests list --database sqlite:///launchpad.db --state awaiting_approval
    $ launchpad requests show 3f1c... --database sqlite:///launchpad.db --output json
"""

from __future__ import annotations

import json
import sys
from uuid import UUID

import click
import structlog
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from launchpad_core.cli.utils import ExitCode, error, error_exit, info
from launchpad_core.persistence import SqlRequestStore
from launchpad_core.schemas.promotion import PromotionRequest, PromotionState

logger = structlog.get_logger(__name__)

_DATABASE_OPTION = click.option(
    "--database",
    envvar="LAUNCHPAD_DATABASE_URL",
    required=True,
    help="SQLAlchemy database URL. Env: LAUNCHPAD_DATABASE_URL.",
    metavar="URL",
)
_OUTPUT_OPTION = click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)


def _open_store(database: str) -> SqlRequestStore:
    try:
        store = SqlRequestStore(create_engine(database))
        store.create_schema()
    except SQLAlchemyError as e:
        logger.error("request_store_unavailable", error=str(e))
        error_exit("Cannot open request store", exit_code=ExitCode.CONFIGURATION_ERROR)
    return store


def _parse_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        error_exit("Not a request id", exit_code=ExitCode.NOT_FOUND, value=value)


def _summary_line(request: PromotionRequest) -> str:
    approvals = f"{len(request.approver_identities())}/{request.policy.reviewer_count}"
    return (
        f"{request.id}  {request.version.raw:<20} {request.target_environment.value:<8} "
        f"{request.state.value:<18} approvals={approvals}"
    )


def _format_request(request: PromotionRequest) -> str:
    lines = [
        f"Request {request.id}",
        "=" * 50,
        f"Version:     {request.version.raw} ({request.version.variant.value})",
        f"Environment: {request.target_environment.value}",
        f"State:       {request.state.value}",
        f"Actor:       {request.actor}",
        f"Created:     {request.created_at.isoformat()}",
    ]
    if request.chain_id is not None:
        lines.append(f"Chain:       {request.chain_id} (step {request.step_index + 1})")
    if request.artifact_ref:
        lines.append(f"Artifact:    {request.artifact_ref}")
    if request.rolled_back_to:
        lines.append(f"Restored:    {request.rolled_back_to}")
    if request.approvals:
        lines.append("Approvals:")
        lines.extend(
            f"  - {a.reviewer} at {a.timestamp.isoformat()}" for a in request.approvals
        )
    if request.failure is not None:
        touched = "yes" if request.failure.resource_touched else "no"
        lines.append(
            f"Failure:     {request.failure.kind.value} in {request.failure.component.value}"
            f" (resources touched: {touched})"
        )
        lines.append(f"             {request.failure.message}")
    lines.append("History:")
    for t in request.history:
        reason = f"  {t.reason}" if t.reason else ""
        lines.append(
            f"  {t.timestamp.isoformat()}  {t.from_state.value} -> {t.to_state.value}"
            f"  by {t.actor}{reason}"
        )
    return "\n".join(lines)


@click.group(name="requests", help="Inspect persisted promotion requests.")
def requests_group() -> None:
    """Promotion request command group."""


@requests_group.command(name="list", help="List promotion requests.")
@_DATABASE_OPTION
@click.option(
    "--state",
    type=click.Choice([s.value for s in PromotionState]),
    default=None,
    help="Only show requests in this state.",
)
@_OUTPUT_OPTION
def list_command(database: str, state: str | None, output: str) -> None:
    store = _open_store(database)
    requests = store.list_requests(PromotionState(state) if state else None)
    if output == "json":
        click.echo(json.dumps([r.model_dump(mode="json") for r in requests], indent=2))
        return
    if not requests:
        info("No promotion requests found")
        return
    for request in requests:
        click.echo(_summary_line(request))


@requests_group.command(name="show", help="Show a promotion request and its history.")
@click.argument("request_id")
@_DATABASE_OPTION
@_OUTPUT_OPTION
def show_command(request_id: str, database: str, output: str) -> None:
    store = _open_store(database)
    request = store.get(_parse_id(request_id))
    if request is None:
        error("Request not found", request_id=request_id)
        sys.exit(ExitCode.NOT_FOUND)
    if output == "json":
        click.echo(json.dumps(request.model_dump(mode="json"), indent=2))
    else:
        click.echo(_format_request(request))


@requests_group.command(name="chain", help="Show every request of a chain in plan order.")
@click.argument("chain_id")
@_DATABASE_OPTION
def chain_command(chain_id: str, database: str) -> None:
    store = _open_store(database)
    members = store.list_chain(_parse_id(chain_id))
    if not members:
        error("Chain not found", chain_id=chain_id)
        sys.exit(ExitCode.NOT_FOUND)
    for request in members:
        click.echo(_summary_line(request))


__all__: list[str] = ["requests_group"]
