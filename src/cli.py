"""Operator command-line interface implemented with Typer."""

from __future__ import annotations

import dataclasses
import json
from contextlib import closing
from datetime import date, datetime
from enum import Enum
from typing import Any

import typer

from config import settings
from delivery.channels import ResendEmailChannel
from delivery.dead_letter import resolve_dead_letter
from delivery.dispatcher import DeliveryDispatcher
from detection.base import Domain
from diagnostics.operator_report import build_operator_report
from escalation.cycle import run_cycle
from escalation.digest import flush_due_digests
from logging_config import configure_logging
from models import DigestType
from services.database import get_sync_session, run_migrations_sync
from time_utils import utc_now

FAILURE_EXIT_CODE = 1


def _session_factory():
    return get_sync_session()


def _channel_factory():
    return ResendEmailChannel()


def _serialize(value: Any) -> Any:
    """Convert result objects to JSON-serializable structures."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value):
        return _serialize(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(key): _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_serialize(item) for item in value]
    return str(value)


def _emit_output(result: Any, as_json: bool) -> None:
    """Render command output in requested format."""
    data = _serialize(result)
    if as_json:
        typer.echo(json.dumps(data, sort_keys=True, separators=(",", ":")))
        return
    if isinstance(data, dict):
        for key in sorted(data):
            value = data[key]
            if isinstance(value, (dict, list)):
                value = json.dumps(value, sort_keys=True)
            typer.echo(f"{key}: {value}")
        return
    typer.echo(str(data))


app = typer.Typer(no_args_is_help=True, help="Compliance alerting engine")


@app.callback()
def main(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
    log_level: str | None = typer.Option(None, help="Override the configured log level"),
) -> None:
    """Configure logging and output for all commands."""
    configure_logging(log_level or settings.log_level)
    ctx.obj = {"as_json": as_json}


@app.command("detect")
def detect_command(
    ctx: typer.Context,
    domain: Domain = typer.Argument(..., help="Domain detector to run"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Evaluate without writing"),
) -> None:
    """Run one detection and escalation cycle."""
    result = run_cycle(domain, session_factory=_session_factory, now=utc_now(), dry_run=dry_run)
    _emit_output(result.as_dict(), ctx.obj["as_json"])
    if result.errors:
        raise typer.Exit(code=FAILURE_EXIT_CODE)


@app.command("dispatch")
def dispatch_command(
    ctx: typer.Context,
    batch_size: int | None = typer.Option(None, min=1, help="Maximum notifications to deliver"),
) -> None:
    """Deliver one batch of due notifications."""
    dispatcher = DeliveryDispatcher(session_factory=_session_factory, channel=_channel_factory())
    _emit_output(dispatcher.dispatch_due(utc_now(), batch_size), ctx.obj["as_json"])


@app.command("flush-digests")
def flush_digests_command(
    ctx: typer.Context,
    digest_type: DigestType = typer.Argument(..., help="DAILY or WEEKLY"),
) -> None:
    """Send the digests of one type for every recipient with queued items."""
    stats = flush_due_digests(
        session_factory=_session_factory,
        channel=_channel_factory(),
        digest_type=digest_type,
        now=utc_now(),
    )
    _emit_output(stats, ctx.obj["as_json"])


@app.command("resolve-dead-letter")
def resolve_dead_letter_command(
    ctx: typer.Context,
    entry_id: int = typer.Argument(..., help="Dead letter id to mark handled"),
) -> None:
    """Mark a dead-lettered notification as handled."""
    with closing(_session_factory()) as session:
        resolved = resolve_dead_letter(session, entry_id, utc_now())
        session.commit()
    _emit_output({"id": entry_id, "resolved": resolved}, ctx.obj["as_json"])
    if not resolved:
        raise typer.Exit(code=FAILURE_EXIT_CODE)


@app.command("migrate")
def migrate_command(
    revision: str = typer.Option("head", help="Alembic revision to upgrade to"),
) -> None:
    """Upgrade the alerting schema."""
    run_migrations_sync(revision)
    typer.echo(f"Schema upgraded to {revision}")


@app.command("report")
def report_command(ctx: typer.Context) -> None:
    """Print dead letters, stale jobs, and recent delivery counts."""
    with closing(_session_factory()) as session:
        report = build_operator_report(session, utc_now())
    _emit_output(report, ctx.obj["as_json"])


if __name__ == "__main__":
    app()
