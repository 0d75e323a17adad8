"""Command line interface for managing and running leadflow flows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from leadflow import FlowExecutor, create_run, get_repository
from leadflow.cli_utils.flows import _format_run_line, load_flow_file, parse_input
from leadflow.errors import LeadflowError
from leadflow.validation import validate_flow

app = typer.Typer(help="CLI for leadflow flows")

# Command groups
flow_app = typer.Typer(help="Commands for managing flow definitions")
run_app = typer.Typer(help="Commands for creating and executing runs")
audit_app = typer.Typer(help="Commands for inspecting the audit trail")

app.add_typer(flow_app, name="flow")
app.add_typer(run_app, name="run")
app.add_typer(audit_app, name="audit")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Python logging level"),
) -> None:
    """leadflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@flow_app.command("load")
def flow_load(path: Path) -> None:
    """
    Load a YAML or JSON flow definition into the configured repository.

    The definition is validated first; nothing is stored if it has problems.

    Example:
        leadflow flow load ./flows/qualify_lead.yaml
        # Output: Loaded flow 3f2a... (Qualify lead, 2 nodes)
    """
    flow = load_flow_file(path)
    issues = validate_flow(flow)
    if issues:
        for issue in issues:
            typer.secho(f"- {issue}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    repo = get_repository()
    asyncio.run(repo.save_flow(flow))
    typer.echo(f"Loaded flow {flow.id} ({flow.name}, {len(flow.nodes)} nodes)")


@flow_app.command("validate")
def flow_validate(path: Path) -> None:
    """Check a flow definition file without storing it."""
    flow = load_flow_file(path)
    issues = validate_flow(flow)
    if not issues:
        typer.echo(f"{flow.name}: OK")
        return
    for issue in issues:
        typer.secho(f"- {issue}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@flow_app.command("list")
def flow_list() -> None:
    """List stored flows."""
    repo = get_repository()
    flows = asyncio.run(repo.list_flows())
    if not flows:
        typer.echo("No flows found")
        return
    for flow in flows:
        typer.echo(f"{flow.id}\t{flow.name}\t{len(flow.nodes)} nodes")


@run_app.command("create")
def run_create(
    flow_id: str,
    entity_id: Optional[str] = typer.Option(None, help="Entity the run acts on"),
    created_by: Optional[str] = typer.Option(None, help="Acting user"),
    input: Optional[str] = typer.Option(None, help="Initial input as a JSON object"),
) -> None:
    """Create a pending run for a stored flow and print its id."""
    repo = get_repository()
    try:
        run = asyncio.run(
            create_run(
                repo,
                flow_id,
                entity_id=entity_id,
                created_by=created_by,
                initial_input=parse_input(input),
            )
        )
    except (LeadflowError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(run.id)


@run_app.command("execute")
def run_execute(
    run_id: str,
    input: Optional[str] = typer.Option(None, help="Initial input as a JSON object"),
) -> None:
    """
    Execute a pending run and print the response as JSON.

    Exits with code 1 when the run fails or cannot be started; the printed
    response then carries the error and every node log produced so far.

    Example:
        leadflow run execute 9c1e... --input '{"entityId": 42}'
    """
    try:
        initial_input = parse_input(input)
    except ValueError as exc:
        typer.secho(f"Invalid input: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    executor = FlowExecutor(get_repository())
    response = asyncio.run(executor.execute(run_id, initial_input))
    typer.echo(response.model_dump_json(indent=2))
    if not response.ok:
        raise typer.Exit(code=1)


@run_app.command("list")
def run_list(flow_id: Optional[str] = typer.Option(None, help="Only this flow")) -> None:
    """List runs with their status."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(flow_id))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(_format_run_line(run))


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run with its node-by-node log.

    Example:
        leadflow run show 9c1e...
        # Output: Run 9c1e...: failed
        #         - wait (delay): success
        #         - set_status (tabular): failed - No CRM webhook URL configured ...
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status}")
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output)}")
    for log in run.logs:
        line = f"- {log.node_id} ({log.type}): {log.status}"
        if log.error:
            line += f" - {log.error}"
        typer.echo(line)


@audit_app.command("list")
def audit_list(
    entity_id: Optional[str] = typer.Option(None, help="Only this entity"),
) -> None:
    """List audit entries in insertion order."""
    repo = get_repository()
    entries = asyncio.run(repo.list_audit(entity_id))
    if not entries:
        typer.echo("No audit entries found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.id}\t{entry.entity_id}\t{entry.status}\t{entry.action_label}"
            + (f"\t{entry.error}" if entry.error else "")
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
