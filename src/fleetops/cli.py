from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console

from fleetops import __version__
from fleetops.audit import LoggingAuditSink
from fleetops.compliance import generate_compliance_report
from fleetops.logging import LOG_LEVEL_ENV, configure_logging
from fleetops.metadata import load_metadata_json, metadata_json_schema
from fleetops.models import FleetOperation
from fleetops.operations import (
    push_policy_to_fleet,
    rotate_fleet_tokens,
    sync_agent_to_fleet,
    wipe_fleet,
)
from fleetops.overview import generate_fleet_overview
from fleetops.policy import (
    DEFAULT_POLICY,
    CompliancePolicy,
    dump_policy,
    load_policy_from_file,
    validate_policy_file,
)
from fleetops.report import (
    render_compliance_csv,
    render_compliance_json,
    render_compliance_junit,
    render_compliance_table,
    render_operation_json,
    render_operation_table,
    render_operations_table,
    render_overview_json,
    render_overview_table,
)
from fleetops.store import SqliteOperationStore, init_db, resolve_db_path

ARG_METADATA_JSON = typer.Argument(
    ..., exists=True, readable=True, help="Device metadata JSON file"
)
ARG_POLICY_FILE = typer.Argument(..., exists=True, readable=True)
ARG_OPERATION_ID = typer.Argument(..., help="Operation ID")
OPT_DB = typer.Option(None, "--db", help="Path to SQLite operations DB (env FLEETOPS_DB)")
OPT_OUTPUT = typer.Option(None, "--output", help="Write JSON to file")
OPT_DEVICES = typer.Option(None, "--device", help="Device ID (repeatable; default: all)")
OPT_TARGETS = typer.Option(..., "--device", help="Target device ID (repeatable)")
OPT_POLICY = typer.Option(
    None, "--policy", exists=True, readable=True, help="Compliance policy YAML"
)
OPT_ACTOR = typer.Option("operator", "--actor", help="Actor recorded on the operation")
OPT_WORKERS = typer.Option(1, "--workers", min=1, help="Devices dispatched in parallel")
OPT_LIMIT = typer.Option(50, "--limit", min=0, help="Limit rows")
OPT_FORMAT = typer.Option("table", "--format", help="table/json")
OPT_LOG_LEVEL = typer.Option(
    None, "--log-level", envvar=LOG_LEVEL_ENV, help="DEBUG/INFO/WARNING/ERROR"
)

app = typer.Typer(help="FleetOps CLI", add_completion=False)
policy_app = typer.Typer(help="Compliance policy tools")
schema_app = typer.Typer(help="Schema export")
ops_app = typer.Typer(help="Bulk fleet operations")
app.add_typer(policy_app, name="policy")
app.add_typer(schema_app, name="schema")
app.add_typer(ops_app, name="ops")

console = Console()


@app.callback()
def _root(log_level: str | None = OPT_LOG_LEVEL) -> None:
    try:
        configure_logging(log_level)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc


def _load_metadata(path: Path) -> dict[str, Any]:
    try:
        return load_metadata_json(path)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _load_policy(path: Path | None) -> CompliancePolicy:
    if path is None:
        return DEFAULT_POLICY
    try:
        policy, _ = load_policy_from_file(str(path))
    except (ValueError, ValidationError, yaml.YAMLError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    return policy


def _target_devices(device_ids: list[str] | None, metadata: dict[str, Any]) -> list[str]:
    if device_ids:
        return list(dict.fromkeys(device_ids))
    return sorted(metadata)


def _clean_targets(device_ids: list[str]) -> list[str]:
    targets = list(dict.fromkeys(item.strip() for item in device_ids if item.strip()))
    if not targets:
        console.print("[red]At least one --device is required[/red]")
        raise typer.Exit(code=2)
    return targets


def _emit_operation(operation: FleetOperation, format: str) -> None:
    if format == "json":
        typer.echo(render_operation_json(operation))
        return
    if format == "table":
        typer.echo(render_operation_table(operation), nl=False)
        return
    console.print(f"Unknown format: {format}")
    raise typer.Exit(code=1)


@app.command()
def version() -> None:
    console.print(__version__)


@app.command()
def init(db: str | None = OPT_DB) -> None:
    """Initialize the operations database."""
    db_path = resolve_db_path(db)
    init_db(db_path)
    console.print(f"Initialized DB at {db_path}")


@app.command()
def compliance(
    path: Path = ARG_METADATA_JSON,
    device_ids: list[str] | None = OPT_DEVICES,
    policy_file: Path | None = OPT_POLICY,
    format: str = typer.Option("table", "--format", help="table/json/csv/junit"),
    fail_on_noncompliant: bool = typer.Option(
        False,
        "--fail-on-noncompliant",
        help="Exit 2 if any device is non-compliant or unreachable",
    ),
) -> None:
    """Report which devices satisfy the required security controls."""
    metadata = _load_metadata(path)
    policy = _load_policy(policy_file)
    report = generate_compliance_report(_target_devices(device_ids, metadata), metadata, policy)

    if format == "table":
        typer.echo(render_compliance_table(report), nl=False)
    elif format == "json":
        typer.echo(render_compliance_json(report))
    elif format == "csv":
        typer.echo(render_compliance_csv(report), nl=False)
    elif format == "junit":
        typer.echo(render_compliance_junit(report), nl=False)
    else:
        console.print(f"Unknown format: {format}")
        raise typer.Exit(code=1)

    if fail_on_noncompliant and (report.non_compliant or report.unreachable):
        raise typer.Exit(code=2)


@app.command()
def overview(
    path: Path = ARG_METADATA_JSON,
    device_ids: list[str] | None = OPT_DEVICES,
    agents: int = typer.Option(0, "--agents", min=0, help="Number of registered agents"),
    policy_file: Path | None = OPT_POLICY,
    format: str = OPT_FORMAT,
) -> None:
    """Summarize the fleet by trust level."""
    metadata = _load_metadata(path)
    policy = _load_policy(policy_file)
    result = generate_fleet_overview(
        _target_devices(device_ids, metadata), metadata, agents, policy
    )
    if format == "json":
        typer.echo(render_overview_json(result))
        return
    if format == "table":
        typer.echo(render_overview_table(result), nl=False)
        return
    console.print(f"Unknown format: {format}")
    raise typer.Exit(code=1)


@policy_app.command("validate")
def policy_validate(path: Path = ARG_POLICY_FILE) -> None:
    """Validate a compliance policy file."""
    errors = validate_policy_file(str(path))
    if errors:
        for error in errors:
            console.print(f"[red]{error}[/red]")
        raise typer.Exit(code=1)
    console.print("OK")


@policy_app.command("show")
def policy_show(policy_file: Path | None = OPT_POLICY) -> None:
    """Print the effective policy (defaults merged) as YAML."""
    typer.echo(dump_policy(_load_policy(policy_file)), nl=False)


@schema_app.command("metadata")
def schema_metadata(
    output: Path | None = OPT_OUTPUT,
) -> None:
    """Print the device metadata JSON schema (for agent/exporter authors)."""
    text = json.dumps(metadata_json_schema(), indent=2)
    if output:
        output.write_text(text, encoding="utf-8")
        console.print(f"Wrote {output}")
    else:
        typer.echo(text)


@ops_app.command("push")
def ops_push(
    device_ids: list[str] = OPT_TARGETS,
    policy_names: list[str] | None = typer.Option(
        None, "--policy-name", help="Policy to push (repeatable; default: security, compliance)"
    ),
    actor: str = OPT_ACTOR,
    workers: int = OPT_WORKERS,
    format: str = OPT_FORMAT,
    db: str | None = OPT_DB,
) -> None:
    """Push policies to devices."""
    targets = _clean_targets(device_ids)
    with SqliteOperationStore(resolve_db_path(db)) as store:
        operation = push_policy_to_fleet(
            store,
            targets,
            policy_names or [],
            actor,
            audit=LoggingAuditSink(),
            max_workers=workers,
        )
    _emit_operation(operation, format)


@ops_app.command("rotate")
def ops_rotate(
    device_ids: list[str] = OPT_TARGETS,
    actor: str = OPT_ACTOR,
    workers: int = OPT_WORKERS,
    format: str = OPT_FORMAT,
    db: str | None = OPT_DB,
) -> None:
    """Rotate device tokens."""
    targets = _clean_targets(device_ids)
    with SqliteOperationStore(resolve_db_path(db)) as store:
        operation = rotate_fleet_tokens(
            store, targets, actor, audit=LoggingAuditSink(), max_workers=workers
        )
    _emit_operation(operation, format)


@ops_app.command("wipe")
def ops_wipe(
    device_ids: list[str] = OPT_TARGETS,
    confirm: bool = typer.Option(False, "--confirm", help="Required: confirm remote wipe"),
    actor: str = OPT_ACTOR,
    workers: int = OPT_WORKERS,
    format: str = OPT_FORMAT,
    db: str | None = OPT_DB,
) -> None:
    """Initiate a remote wipe."""
    targets = _clean_targets(device_ids)
    if not confirm:
        console.print("[red]--confirm is required for fleet wipe[/red]")
        raise typer.Exit(code=2)
    with SqliteOperationStore(resolve_db_path(db)) as store:
        operation = wipe_fleet(
            store,
            targets,
            actor,
            confirm=confirm,
            audit=LoggingAuditSink(),
            max_workers=workers,
        )
    _emit_operation(operation, format)


@ops_app.command("sync")
def ops_sync(
    agent_id: str = typer.Option(..., "--agent", help="Agent ID to sync"),
    device_ids: list[str] = OPT_TARGETS,
    actor: str = OPT_ACTOR,
    workers: int = OPT_WORKERS,
    format: str = OPT_FORMAT,
    db: str | None = OPT_DB,
) -> None:
    """Sync an agent's configuration to devices."""
    targets = _clean_targets(device_ids)
    with SqliteOperationStore(resolve_db_path(db)) as store:
        try:
            operation = sync_agent_to_fleet(
                store,
                agent_id,
                targets,
                actor,
                audit=LoggingAuditSink(),
                max_workers=workers,
            )
        except ValueError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=2) from exc
    _emit_operation(operation, format)


@ops_app.command("list")
def ops_list(
    limit: int = OPT_LIMIT,
    format: str = OPT_FORMAT,
    db: str | None = OPT_DB,
) -> None:
    """List recorded operations, most recent first."""
    with SqliteOperationStore(resolve_db_path(db)) as store:
        operations = store.list_operations(limit)
    if format == "json":
        typer.echo(json.dumps([operation.to_dict() for operation in operations], indent=2))
        return
    if format == "table":
        typer.echo(render_operations_table(operations), nl=False)
        return
    console.print(f"Unknown format: {format}")
    raise typer.Exit(code=1)


@ops_app.command("show")
def ops_show(
    operation_id: str = ARG_OPERATION_ID,
    format: str = OPT_FORMAT,
    db: str | None = OPT_DB,
) -> None:
    """Show one operation with per-device results."""
    with SqliteOperationStore(resolve_db_path(db)) as store:
        operation = store.get_operation(operation_id)
    if operation is None:
        console.print(f"[red]Unknown operation: {operation_id}[/red]")
        raise typer.Exit(code=1)
    _emit_operation(operation, format)


def main() -> None:
    """Entrypoint for `python -m fleetops.cli`."""

    app(prog_name="fleetops")


if __name__ == "__main__":
    main()
