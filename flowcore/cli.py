"""CLI entry point for flowcore.

Commands:
- flowcore init: Write the default engine configuration
- flowcore validate: Check a workflow document and show its structure
- flowcore context: Show the variables a node may reference
- flowcore rename: Rename a node's variable and rewrite downstream templates
- flowcore run: Execute a workflow with the built-in executors
- flowcore status: Show runs and per-node status history
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from flowcore import __version__
from flowcore.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowcore.cli_ui.variable_tree import render_variable_tree
from flowcore.core.config import (
    CONFIG_DIR,
    DEFAULT_CONFIG_YAML,
    ConfigError,
    EngineConfig,
    default_config_path,
    load_config,
)
from flowcore.core.context_builder import BundleOptions, build_context
from flowcore.core.graph_schema import (
    VARIABLE_NAME_PATTERN,
    WorkflowDocument,
    WorkflowValidationError,
    dump_workflow,
    load_workflow_file,
)
from flowcore.core.models import RunStatus
from flowcore.core.rename import propagate_rename
from flowcore.core.runtime import ExecutorServices, WorkflowRunner
from flowcore.core.state import Database
from flowcore.executors import InMemoryRecordStore, default_registry

console = Console()
logger = logging.getLogger("flowcore")

WORKFLOW_SUFFIXES = (".yaml", ".yml", ".json")


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_document(workflow_file: str) -> WorkflowDocument:
    """Load a workflow file, exiting with readable errors."""
    try:
        return load_workflow_file(workflow_file)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing workflow file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def _write_document(document: WorkflowDocument, path: Path) -> None:
    data = dump_workflow(document)
    if path.suffix == ".json":
        path.write_text(json.dumps(data, indent=2) + "\n")
    else:
        path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True))


def _directory_loader(directory: Path):
    """Workflow loader resolving bundle ids against documents in ``directory``."""

    def load(workflow_id: str) -> WorkflowDocument | None:
        for path in sorted(directory.iterdir()):
            if path.suffix not in WORKFLOW_SUFFIXES:
                continue
            try:
                document = load_workflow_file(path)
            except (ValueError, yaml.YAMLError, pydantic.ValidationError) as e:
                logger.debug(f"Skipping {path}: {e}")
                continue
            if document.id == workflow_id:
                return document
        return None

    return load


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """flowcore - workflow execution engine.

    Runs DAG workflows whose nodes exchange data through named variables
    referenced as {{namespace.path}} templates.
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    _configure_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = config


@main.command()
def init() -> None:
    """Initialize a project for flowcore."""
    config_path = default_config_path(get_repo_path())

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    console.print(f"[green]Initialized {CONFIG_DIR}/[/green]")
    console.print(f"  Config: {config_path}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate a workflow document against the built-in executors."""
    document = _load_document(workflow_file)

    errors = document.validate_graph(default_registry())
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(document.nodes)}")
    console.print(f"  Edges: {len(document.edges)}")
    console.print(f"  Execution order: {escape(' -> '.join(document.topological_order()))}")
    console.print(TerminalGraphRenderer(console).render_as_tree(document))


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.argument("node_id")
@click.option("--parent-name", help="Placeholder namespace for the calling workflow (bundles)")
@click.option("--json", "as_json", is_flag=True, help="Print the variable tree as JSON")
def context(workflow_file: str, node_id: str, parent_name: str | None, as_json: bool) -> None:
    """Show the variables NODE_ID may reference."""
    document = _load_document(workflow_file)
    if document.get_node(node_id) is None:
        console.print(f"[red]Node '{escape(node_id)}' not found[/red]")
        sys.exit(1)

    options = None
    if document.is_bundle:
        options = BundleOptions(
            is_bundle=True,
            bundle_inputs=document.bundle_inputs,
            bundle_workflow_name=parent_name,
        )

    items = build_context(node_id, document.nodes, document.edges, options)
    if as_json:
        click.echo(json.dumps([item.model_dump(exclude_none=True) for item in items], indent=2))
        return
    console.print(render_variable_tree(items, title=f"Variables for {node_id}"))


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.argument("node_id")
@click.argument("new_name")
@click.option("--output", "-o", type=click.Path(), help="Write here instead of in place")
def rename(workflow_file: str, node_id: str, new_name: str, output: str | None) -> None:
    """Rename NODE_ID's variable and rewrite every downstream reference."""
    document = _load_document(workflow_file)
    node = document.get_node(node_id)
    if node is None:
        console.print(f"[red]Node '{escape(node_id)}' not found[/red]")
        sys.exit(1)

    old_name = node.variable_name
    if not old_name:
        console.print(f"[red]Node '{escape(node_id)}' has no variable name[/red]")
        sys.exit(1)
    if not VARIABLE_NAME_PATTERN.match(new_name):
        console.print(f"[red]Invalid variable name '{escape(new_name)}'[/red]")
        sys.exit(1)

    nodes = propagate_rename(node_id, old_name, new_name, document.nodes, document.edges)
    changed = [n.id for n, before in zip(nodes, document.nodes) if n is not before]

    renamed_source = node.model_copy(update={"data": {**node.data, "variableName": new_name}})
    nodes = [renamed_source if n.id == node_id else n for n in nodes]
    updated = document.model_copy(update={"nodes": nodes})

    target = Path(output) if output else Path(workflow_file)
    _write_document(updated, target)

    console.print(
        f"[green]Renamed[/green] {escape(old_name)} → {escape(new_name)} "
        f"({len(changed)} downstream node(s) rewritten)"
    )
    for changed_id in changed:
        console.print(f"  - {escape(changed_id)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--run-id", help="Reuse to retry a failed run (completed steps are replayed)")
@click.option("--trigger-data", help="Trigger payload as a JSON object")
@click.option(
    "--bundle-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Directory searched for bundle workflows (default: the workflow's directory)",
)
@click.pass_obj
def run(
    config: EngineConfig,
    workflow_file: str,
    run_id: str | None,
    trigger_data: str | None,
    bundle_dir: str | None,
) -> None:
    """Execute a workflow with the built-in executors."""
    document = _load_document(workflow_file)

    payload: dict[str, Any] = {}
    if trigger_data:
        try:
            payload = json.loads(trigger_data)
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid --trigger-data JSON:[/red] {escape(str(e))}")
            sys.exit(1)
        if not isinstance(payload, dict):
            console.print("[red]--trigger-data must be a JSON object[/red]")
            sys.exit(1)

    services = ExecutorServices(
        record_store=InMemoryRecordStore(),
        workflow_loader=_directory_loader(Path(bundle_dir or Path(workflow_file).parent)),
    )
    runner = WorkflowRunner.from_config(config, default_registry(), services=services)

    try:
        result = asyncio.run(runner.execute(document, trigger_data=payload, run_id=run_id))
    except WorkflowValidationError as e:
        console.print("[red]Validation errors:[/red]")
        for error in e.errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Workflow failed:[/red] {escape(str(e))}")
        sys.exit(1)

    table = StatusTableRenderer(console).render_status_table(
        document, result.run_id, result.statuses, result.context
    )
    console.print(table)

    if result.status == RunStatus.STOPPED:
        console.print(f"[yellow]Workflow stopped early[/yellow] (run {escape(result.run_id)})")
    else:
        console.print(f"[green]Workflow completed[/green] (run {escape(result.run_id)})")


@main.command()
@click.argument("run_id", required=False)
@click.option("--workflow-id", "-w", help="Filter runs by workflow ID")
@click.option("--limit", type=int, default=20, help="Number of runs to list")
@click.pass_obj
def status(config: EngineConfig, run_id: str | None, workflow_id: str | None, limit: int) -> None:
    """Show recent runs, or the status history of RUN_ID."""
    if not config.db_path.exists():
        console.print("[yellow]No flowcore database found. Run a workflow first.[/yellow]")
        return

    db = Database(config.db_path)

    if run_id is None:
        table = Table(title="Recent Runs")
        table.add_column("Run", style="cyan")
        table.add_column("Workflow", style="magenta")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Started")
        for record in db.list_runs(workflow_id, limit):
            table.add_row(
                escape(record.id),
                escape(record.workflow_name or record.workflow_id),
                record.status.value,
                str(record.attempts),
                str(record.started_at or "-"),
            )
        console.print(table)
        return

    record = db.get_run(run_id)
    if record is None:
        console.print(f"[red]Run '{escape(run_id)}' not found[/]")
        sys.exit(1)

    status_color = {
        "running": "blue",
        "completed": "green",
        "failed": "red",
        "stopped": "yellow",
    }.get(record.status.value, "white")

    console.print(
        Panel(
            f"[bold]Workflow:[/] {escape(record.workflow_name or record.workflow_id)}\n"
            f"[bold]Status:[/] [{status_color}]{record.status.value}[/]\n"
            f"[bold]Attempts:[/] {record.attempts}\n"
            f"[bold]Started:[/] {record.started_at}\n"
            f"[bold]Completed:[/] {record.completed_at or '-'}\n"
            f"[bold]Failed node:[/] {escape(record.failed_node or '-')}\n"
            f"[bold]Error:[/] {escape(record.error or '-')}",
            title=f"Run: {escape(run_id[:8])}...",
        )
    )

    table = Table(title="Node Status History")
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Attempt", justify="right")
    table.add_column("Time")
    for event in db.get_status_history(run_id):
        table.add_row(
            escape(event.node_id), event.status.value, str(event.attempt), str(event.timestamp)
        )
    console.print(table)

    latest = db.get_latest_statuses(run_id)
    if latest:
        summary = Table(title="Latest Node Status")
        summary.add_column("Node", style="cyan")
        summary.add_column("Status")
        for node_id, node_status in latest.items():
            summary.add_row(escape(node_id), node_status.value)
        console.print(summary)


if __name__ == "__main__":
    main()
