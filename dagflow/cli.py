"""CLI entry point for dagflow.

Commands:
- dagflow init: Create .dagflow/, config, database and the default workflows
- dagflow list / show / validate / create / enable / disable / delete: Definitions
- dagflow trigger / resume / cancel: Drive runs
- dagflow executions / status: Inspect runs
"""

import json
import logging
import sys
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from dagflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from dagflow.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    ConfigError,
    EngineConfig,
    load_config,
)
from dagflow.core.engine import WorkflowEngine
from dagflow.core.models import ExecutionFilters, ExecutionStatus
from dagflow.core.seed import DefinitionFileError, install_defaults, load_definition_file
from dagflow.core.state import Database
from dagflow.core.store import GraphStore
from dagflow.standalone import SnapshotError, standalone_collaborators

console = Console()

STATUS_COLORS = {
    "running": "blue",
    "waiting": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
}


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


def _load_config() -> EngineConfig:
    try:
        return load_config(get_repo_path())
    except ConfigError as e:
        _fail(escape(str(e)))


def _open_db(config: EngineConfig) -> Database:
    db_path = get_repo_path() / config.db_path
    if not db_path.exists():
        console.print("[yellow]No dagflow database found. Run 'dagflow init' first.[/yellow]")
        sys.exit(1)
    return Database(db_path)


def _open_engine(entity_file: str | None = None) -> WorkflowEngine:
    config = _load_config()
    db = _open_db(config)
    try:
        services = standalone_collaborators(Path(entity_file) if entity_file else None)
    except SnapshotError as e:
        _fail(escape(str(e)))
    return WorkflowEngine(db, services, config=config)


def _status_text(status: str) -> str:
    return f"[{STATUS_COLORS.get(status, 'white')}]{status}[/]"


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Show engine logs")
def main(verbose: bool) -> None:
    """dagflow - Event-driven workflow orchestration.

    Stores workflow graphs and walks them when domain events fire a trigger.
    """
    try:
        level = "DEBUG" if verbose else load_config(get_repo_path()).log_level
    except ConfigError:
        level = "WARNING"
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@main.command()
@click.option("--no-defaults", is_flag=True, help="Do not install the built-in workflows")
def init(no_defaults: bool) -> None:
    """Initialize dagflow in the current directory."""
    repo_path = get_repo_path()
    dagflow_dir = repo_path / CONFIG_DIR

    if (dagflow_dir / CONFIG_FILE).exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    dagflow_dir.mkdir(parents=True, exist_ok=True)
    (dagflow_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML)

    config = _load_config()
    db = Database(repo_path / config.db_path)
    console.print(f"[green]Initialized dagflow in {escape(str(dagflow_dir))}[/green]")

    if not no_defaults:
        created = install_defaults(GraphStore(db))
        console.print(f"  Installed {len(created)} default workflow(s)")


# ========== Definitions ==========


@main.command("list")
@click.option("--project", "-p", help="Project id (also lists global workflows)")
@click.option("--enabled/--disabled", default=None, help="Filter by enabled flag")
def list_definitions(project: str | None, enabled: bool | None) -> None:
    """List workflow definitions."""
    config = _load_config()
    store = GraphStore(_open_db(config))
    definitions = store.list_definitions(project_id=project, enabled=enabled)

    if not definitions:
        console.print("[dim]No workflow definitions found[/dim]")
        return

    table = Table(title="Workflow Definitions")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Scope", style="magenta")
    table.add_column("Version", justify="right")
    table.add_column("Enabled", justify="center")

    for d in definitions:
        table.add_row(
            escape(d.id),
            escape(d.name),
            escape(d.project_id) if d.project_id else "global",
            str(d.version),
            "[green]yes[/]" if d.is_enabled else "[dim]no[/]",
        )
    console.print(table)


@main.command()
@click.argument("definition_id")
def show(definition_id: str) -> None:
    """Show a definition as a tree."""
    config = _load_config()
    store = GraphStore(_open_db(config))
    definition = store.get_definition(definition_id)
    if definition is None:
        _fail(f"Definition '{escape(definition_id)}' not found")

    console.print(TerminalGraphRenderer(console).render_as_tree(definition))
    if definition.description:
        console.print(f"\n{escape(definition.description)}")

    problems = definition.validate_graph()
    if problems:
        console.print("\n[yellow bold]Warnings:[/]")
        for problem in problems:
            console.print(f"  [yellow]• {escape(problem)}[/]")


@main.command()
@click.argument("definition_file", type=click.Path(exists=True))
def validate(definition_file: str) -> None:
    """Validate workflow definitions in a YAML file."""
    try:
        definitions = load_definition_file(Path(definition_file))
    except DefinitionFileError as e:
        _fail(escape(str(e)))

    failed = False
    for definition in definitions:
        problems = definition.validate_graph()
        if problems:
            failed = True
            console.print(f"[red]✗ {escape(definition.name)}[/]")
            for problem in problems:
                console.print(f"    - {escape(problem)}")
        else:
            console.print(
                f"[green]✓ {escape(definition.name)}[/] "
                f"({len(definition.nodes)} nodes, {len(definition.edges)} edges)"
            )
    if failed:
        sys.exit(1)


@main.command()
@click.argument("definition_file", type=click.Path(exists=True))
def create(definition_file: str) -> None:
    """Create workflow definitions from a YAML file."""
    try:
        definitions = load_definition_file(Path(definition_file))
    except DefinitionFileError as e:
        _fail(escape(str(e)))

    config = _load_config()
    store = GraphStore(_open_db(config))
    for data in definitions:
        created = store.create_definition(data)
        console.print(f"[green]Created[/green] {escape(created.name)} [cyan]{created.id}[/cyan]")
        for problem in data.validate_graph():
            console.print(f"  [yellow]• {escape(problem)}[/]")


def _set_enabled(definition_id: str, enabled: bool) -> None:
    config = _load_config()
    store = GraphStore(_open_db(config))
    definition = store.toggle_enabled(definition_id, enabled)
    if definition is None:
        _fail(f"Definition '{escape(definition_id)}' not found")
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]{escape(definition.name)} {state}[/green]")


@main.command()
@click.argument("definition_id")
def enable(definition_id: str) -> None:
    """Enable a definition."""
    _set_enabled(definition_id, True)


@main.command()
@click.argument("definition_id")
def disable(definition_id: str) -> None:
    """Disable a definition."""
    _set_enabled(definition_id, False)


@main.command()
@click.argument("definition_id")
@click.confirmation_option(prompt="Delete this definition and all of its runs?")
def delete(definition_id: str) -> None:
    """Delete a definition together with its runs."""
    config = _load_config()
    store = GraphStore(_open_db(config))
    if not store.delete_definition(definition_id):
        _fail(f"Definition '{escape(definition_id)}' not found")
    console.print(f"[green]Deleted {escape(definition_id)}[/green]")


# ========== Runs ==========


def _print_execution(engine: WorkflowEngine, execution_id: str) -> None:
    run = engine.get_execution(execution_id)
    if run is None:
        _fail(f"Execution '{escape(execution_id)}' not found")

    safe_error = escape(run.error_message) if run.error_message else "-"
    console.print(
        Panel(
            f"[bold]Workflow:[/] {escape(run.workflow_id)}\n"
            f"[bold]Entity:[/] {escape(run.entity_type)} {escape(run.entity_id) or '-'}\n"
            f"[bold]Status:[/] {_status_text(run.status.value)}\n"
            f"[bold]Started:[/] {run.started_at}\n"
            f"[bold]Completed:[/] {run.completed_at or '-'}\n"
            f"[bold]Error:[/] {safe_error}",
            title=f"Execution: {escape(run.id)}",
        )
    )
    definition = engine.store.get_definition(run.workflow_id)
    table = StatusTableRenderer(console).render_status_table(
        definition,
        run.id,
        run.node_statuses(),
        outputs={ne.node_id: ne.output_data for ne in run.node_executions},
        errors={ne.node_id: ne.error_message for ne in run.node_executions},
    )
    console.print(table)


@main.command()
@click.argument("definition_id")
@click.option("--entity-type", default="task", show_default=True, help="Type of the causing entity")
@click.option("--entity-id", default="", help="Id of the causing entity")
@click.option(
    "--entity-file",
    type=click.Path(exists=True),
    help="YAML/JSON snapshot of tasks, schedules and projects",
)
def trigger(definition_id: str, entity_type: str, entity_id: str, entity_file: str | None) -> None:
    """Run a definition manually from its first trigger node."""
    engine = _open_engine(entity_file)
    run = engine.trigger_manual(definition_id, entity_type, entity_id)
    if run is None:
        _fail(f"Definition '{escape(definition_id)}' not found or has no trigger node")
    _print_execution(engine, run.id)


@main.command()
@click.argument("execution_id")
@click.argument("node_id")
@click.option("--result", "result_json", default="{}", help="JSON result recorded for the node")
@click.option(
    "--entity-file",
    type=click.Path(exists=True),
    help="YAML/JSON snapshot of tasks, schedules and projects",
)
def resume(execution_id: str, node_id: str, result_json: str, entity_file: str | None) -> None:
    """Resume a run waiting at an approval or delay node."""
    try:
        result = json.loads(result_json)
    except json.JSONDecodeError as e:
        _fail(f"--result is not valid JSON: {escape(str(e))}")

    engine = _open_engine(entity_file)
    run = engine.resume_execution(execution_id, node_id, result)
    if run is None:
        _fail(f"Execution '{escape(execution_id)}' is not waiting")
    _print_execution(engine, run.id)


@main.command()
@click.argument("execution_id")
def cancel(execution_id: str) -> None:
    """Cancel a running or waiting run."""
    engine = _open_engine()
    before = engine.get_execution(execution_id)
    run = engine.cancel_execution(execution_id)
    if before is None or run is None:
        _fail(f"Execution '{escape(execution_id)}' not found")
    if before.status.is_terminal:
        console.print(f"[yellow]Run already {run.status.value}, nothing to cancel[/yellow]")
        return
    console.print(f"[green]Cancelled {escape(execution_id)}[/green]")


@main.command()
@click.option("--workflow-id", "-w", help="Filter by definition id")
@click.option("--entity-type", help="Filter by entity type")
@click.option("--entity-id", help="Filter by entity id")
@click.option(
    "--status",
    "-s",
    type=click.Choice([s.value for s in ExecutionStatus]),
    help="Filter by run status",
)
@click.option("--limit", "-n", type=int, default=None, help="Maximum runs to show")
@click.option("--json", "as_json", is_flag=True, help="Print runs as JSON")
def executions(
    workflow_id: str | None,
    entity_type: str | None,
    entity_id: str | None,
    status: str | None,
    limit: int | None,
    as_json: bool,
) -> None:
    """List workflow runs, newest first."""
    engine = _open_engine()
    runs = engine.list_executions(
        ExecutionFilters(
            workflow_id=workflow_id,
            entity_type=entity_type,
            entity_id=entity_id,
            status=ExecutionStatus(status) if status else None,
            limit=limit,
        )
    )

    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json") for r in runs], indent=2))
        return
    if not runs:
        console.print("[dim]No executions found[/dim]")
        return

    table = Table(title="Executions")
    table.add_column("ID", style="cyan")
    table.add_column("Workflow", style="white")
    table.add_column("Entity")
    table.add_column("Status", justify="center")
    table.add_column("Started")
    for run in runs:
        table.add_row(
            escape(run.id),
            escape(run.workflow_id),
            escape(f"{run.entity_type}:{run.entity_id}" if run.entity_id else run.entity_type),
            _status_text(run.status.value),
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@main.command()
@click.argument("execution_id")
def status(execution_id: str) -> None:
    """Show a run and the status of each node."""
    engine = _open_engine()
    _print_execution(engine, execution_id)


@main.command("export")
@click.argument("definition_id")
def export_definition(definition_id: str) -> None:
    """Print a definition as YAML accepted by 'dagflow create'."""
    config = _load_config()
    store = GraphStore(_open_db(config))
    definition = store.get_definition(definition_id)
    if definition is None:
        _fail(f"Definition '{escape(definition_id)}' not found")

    index = {node.id: i for i, node in enumerate(definition.nodes)}
    document = {
        "name": definition.name,
        "description": definition.description,
        "project_id": definition.project_id,
        "is_enabled": definition.is_enabled,
        "nodes": [
            node.model_dump(include={"node_type", "name", "config", "position_x", "position_y"})
            for node in definition.nodes
        ],
        "edges": [
            {
                "source_index": index[edge.source_node_id],
                "target_index": index[edge.target_node_id],
                "condition_expr": edge.condition_expr,
                "label": edge.label,
                "sort_order": edge.sort_order,
            }
            for edge in definition.edges
            if edge.source_node_id in index and edge.target_node_id in index
        ],
    }
    click.echo(yaml.safe_dump(document, sort_keys=False))


if __name__ == "__main__":
    main()
