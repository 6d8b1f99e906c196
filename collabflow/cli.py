"""Command line interface for administering collaboration flows."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import typer

from collabflow.config import configure_logging, load_config
from collabflow.decision import CollaborationDecisionEngine
from collabflow.errors import EngineError
from collabflow.monitoring import collect_statistics
from collabflow.persistence import FlowDefinition, get_repository
from collabflow.presence import MessageStoreStaffPresenceDetector
from collabflow.roles import RoleRegistry
from collabflow.stores import InMemoryMessageStore
from collabflow.versions import FlowVersionManager

T = TypeVar("T")

app = typer.Typer(help="CLI for collaboration flows")

flow_app = typer.Typer(help="Commands for managing flow definitions and versions")
instance_app = typer.Typer(help="Commands for inspecting flow instances")
decision_app = typer.Typer(help="Commands for inspecting collaboration decisions")

app.add_typer(flow_app, name="flow")
app.add_typer(instance_app, name="instance")
app.add_typer(decision_app, name="decision")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level, e.g. DEBUG")
) -> None:
    """Collabflow CLI entry point."""
    configure_logging(log_level or load_config().log_level)


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro``; engine errors become a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except EngineError as exc:
        typer.secho(f"{exc.kind}: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError) as exc:
        typer.secho(f"Cannot read {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _versions() -> FlowVersionManager:
    return FlowVersionManager(get_repository())


def _echo_definition(row: FlowDefinition) -> None:
    marker = "*" if row.is_active else " "
    typer.echo(f"{marker} {row.version}\t{row.id}\t{row.name}\t{row.created_at:%Y-%m-%d %H:%M}")


@flow_app.command("versions")
def flow_versions(name: str) -> None:
    """
    List every version of a flow, newest first.

    The active version is marked with ``*``.

    Example:
        collabflow flow versions welcome
        # Output: * 1.1    3f2c...    welcome    2024-01-01 10:00
        #           1.0    9a1b...    welcome    2024-01-01 09:00
    """
    rows = _run(_versions().list_versions(name))
    if not rows:
        typer.echo("No versions found")
        return
    for row in rows:
        _echo_definition(row)


@flow_app.command("create-version")
def flow_create_version(
    name: str,
    changes: Optional[Path] = typer.Option(
        None, help="JSON file with replacement nodes, edges and/or variables"
    ),
) -> None:
    """Supersede the active version of a flow with a new version."""
    payload = _read_json(changes) if changes else {}
    row = _run(_versions().create_version(name, payload))
    typer.echo(f"Created {row.name} version {row.version} ({row.id})")


@flow_app.command("activate")
def flow_activate(version_id: str) -> None:
    """Make a version the active one for its flow."""
    row = _run(_versions().activate(version_id))
    typer.echo(f"Activated {row.name} version {row.version}")


@flow_app.command("rollback")
def flow_rollback(version_id: str) -> None:
    """Restore the content of an older version as a new active version."""
    row = _run(_versions().rollback(version_id))
    typer.echo(f"Rolled back {row.name}: now at version {row.version} ({row.id})")


@flow_app.command("import")
def flow_import(
    path: Path,
    activate: bool = typer.Option(True, help="Activate if the flow has no active version"),
) -> None:
    """Register a flow definition from a JSON file."""
    data = _read_json(path)
    try:
        definition = FlowDefinition.model_validate(data)
    except ValueError as exc:
        typer.secho(f"Invalid flow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    row = _run(_versions().create_definition(definition, activate=activate))
    typer.echo(
        f"Imported {row.name} version {row.version} ({row.id})"
        + (" [active]" if row.is_active else "")
    )


@instance_app.command("list")
def instance_list(
    status: Optional[str] = typer.Option(None, help="Only instances with this status"),
    flow_id: Optional[str] = typer.Option(None, help="Only instances of this definition"),
    limit: int = typer.Option(50, help="Maximum rows to show"),
) -> None:
    """List flow instances, newest first."""
    repo = get_repository()
    instances = _run(
        repo.list_instances(flow_definition_id=flow_id, status=status, limit=limit)
    )
    if not instances:
        typer.echo("No instances found")
        return
    for inst in instances:
        typer.echo(f"{inst.id}\t{inst.flow_name}\t{inst.status}\t{inst.current_node_id or ''}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show an instance and its node execution history."""
    repo = get_repository()
    inst = _run(repo.get_instance(instance_id))
    if inst is None:
        typer.secho(f"NotFound: Flow instance {instance_id} not found", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Instance {inst.id}: {inst.status}")
    typer.echo(f"Flow: {inst.flow_name} ({inst.flow_definition_id})")
    if inst.session_id:
        typer.echo(f"Session: {inst.session_id}")
    if inst.processing_time is not None:
        typer.echo(f"Processing time: {inst.processing_time}ms")
    if inst.error_message:
        typer.echo(f"Error: {inst.error_message}")
    for log in _run(repo.list_logs(instance_id)):
        typer.echo(
            f"- {log.node_id} [{log.node_type}]: {log.status}"
            + (f" ({log.processing_time}ms)" if log.processing_time is not None else "")
            + (f" {log.error_message}" if log.error_message else "")
        )


@instance_app.command("stats")
def instance_stats() -> None:
    """Summarise instances by status and by flow."""
    stats = _run(collect_statistics(get_repository()))
    if not stats.status_counts:
        typer.echo("No instances found")
        return
    for status, count in sorted(stats.status_counts.items()):
        typer.echo(f"{status}\t{count}")
    if stats.average_processing_time is not None:
        typer.echo(f"Average processing time: {stats.average_processing_time}ms")
    for flow in stats.flow_stats:
        typer.echo(
            f"{flow.flow_name}: total={flow.total} completed={flow.completed} failed={flow.failed}"
        )


def _decisions() -> CollaborationDecisionEngine:
    # read-only commands never evaluate presence
    config = load_config()
    return CollaborationDecisionEngine(
        get_repository(),
        RoleRegistry.from_config(config),
        MessageStoreStaffPresenceDetector(InMemoryMessageStore()),
        settings=config.decision,
    )


@decision_app.command("show")
def decision_show(message_id: str) -> None:
    """Show the decision recorded for a message."""
    row = _run(_decisions().get_decision(message_id))
    if row is None:
        typer.secho(f"NotFound: No decision for message {message_id}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Message {row.message_id} (session {row.session_id})")
    typer.echo(f"AI reply: {'yes' if row.should_ai_reply else 'no'}  priority: {row.priority}")
    typer.echo(f"Role: {row.business_role or '-'}  strategy: {row.strategy or '-'}")
    typer.echo(f"Reason: {row.reason}")


@decision_app.command("status")
def decision_status(session_id: str) -> None:
    """Show who replied to each message of a session."""
    engine = _decisions()
    status = _run(engine.get_reply_status(session_id))
    if not status:
        typer.echo("No decisions found")
        return
    for message_id, entry in status.items():
        typer.echo(f"{message_id}\t{entry['reply_type']}\t{entry['priority']}")
    stats = _run(engine.decision_stats(session_id))
    typer.echo(
        f"Total {stats.total_decisions}, unreplied {stats.unreplied}, "
        f"collaboration rate {stats.collaboration_rate}%"
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
