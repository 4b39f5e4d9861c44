"""CLI entry point for nodeflow.

Commands:
- nodeflow init: Create the .nodeflow directory and default config
- nodeflow validate: Validate a workflow definition and show its graph
- nodeflow enqueue: Queue a run for the daemon
- nodeflow run: Queue a run and execute it immediately
- nodeflow daemon: Process the queue until interrupted
- nodeflow status: Show last runs, or the steps of one run
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
from rich.console import Console
from rich.logging import RichHandler

from nodeflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from nodeflow.core.config import (
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    NODEFLOW_DIR,
    ConfigError,
    EngineConfig,
    load_config,
)
from nodeflow.core.graph_engine import WorkflowExecutor
from nodeflow.core.graph_schema import WorkflowDefinition, WorkflowDefinitionError
from nodeflow.core.models import RunStatus
from nodeflow.core.state import RunStore, load_runs_index
from nodeflow.core.worker import QueueDriver

console = Console()


def _setup_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _parse_input(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--input")


def _get_root(ctx: click.Context) -> Path:
    return ctx.obj["root"]


def _load_engine_config(root: Path) -> EngineConfig:
    try:
        return load_config(root)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def _build_driver(root: Path, config: EngineConfig) -> QueueDriver:
    executor = WorkflowExecutor.from_config(root, config)
    store = executor.store
    store.ensure_dirs()
    return QueueDriver(
        executor,
        store,
        stale_after=config.stale_after,
        poll_interval=config.poll_interval,
        max_concurrent_runs=config.max_concurrent_runs,
    )


@click.group()
@click.version_option(package_name="nodeflow")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Vault root containing the .nodeflow directory",
)
@click.option("-v", "--verbose", count=True, help="-v for info logs, -vv for debug logs")
@click.pass_context
def main(ctx: click.Context, root: Path, verbose: int) -> None:
    """nodeflow - run workflow graphs of prompt, code, condition and file nodes."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["root"] = root.absolute()


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize a vault for nodeflow."""
    root = _get_root(ctx)
    base_dir = root / NODEFLOW_DIR

    if base_dir.exists():
        console.print("[yellow]Vault already initialized[/yellow]")
        return

    RunStore(root).ensure_dirs()
    (base_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML)

    console.print("[green]Vault initialized![/green]")
    console.print(f"  Workflows: {base_dir / 'workflows'}")
    console.print(f"  Config:    {base_dir / CONFIG_FILE}")


@main.command()
@click.argument("workflow")
@click.pass_context
def validate(ctx: click.Context, workflow: str) -> None:
    """Validate a workflow and print its graph.

    WORKFLOW is a workflow id in the vault or a path to a definition file.
    """
    root = _get_root(ctx)
    path = Path(workflow)

    if path.suffix == ".json" and path.exists():
        try:
            definition = WorkflowDefinition.model_validate_json(path.read_text(encoding="utf-8"))
        except pydantic.ValidationError as e:
            console.print("[red]Error validating workflow schema:[/red]")
            for err in e.errors():
                loc = ".".join(str(x) for x in err["loc"])
                console.print(f"  - {loc}: {err['msg']}")
            sys.exit(1)
        errors = definition.validate_graph()
        if errors:
            console.print("[red]Validation errors:[/red]")
            for error in errors:
                console.print(f"  - {error}")
            sys.exit(1)
    else:
        try:
            definition = RunStore(root).load_workflow(workflow)
        except WorkflowDefinitionError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(definition.nodes)}")
    console.print(f"  Edges: {len(definition.edges)}")
    console.print(TerminalGraphRenderer(console).render_as_tree(definition))


@main.command()
@click.argument("workflow_id")
@click.option("--input", "input_json", help="Run input as JSON")
@click.pass_context
def enqueue(ctx: click.Context, workflow_id: str, input_json: str | None) -> None:
    """Queue a run of WORKFLOW_ID for the daemon."""
    root = _get_root(ctx)
    input_data = _parse_input(input_json)
    store = RunStore(root)
    store.ensure_dirs()

    # Enqueue only writes the entry; the daemon builds the executor
    run_id = QueueDriver(None, store).enqueue(workflow_id, input_data)
    console.print(run_id)


@main.command()
@click.argument("workflow_id")
@click.option("--input", "input_json", help="Run input as JSON")
@click.pass_context
def run(ctx: click.Context, workflow_id: str, input_json: str | None) -> None:
    """Queue a run of WORKFLOW_ID and execute it now."""
    root = _get_root(ctx)
    input_data = _parse_input(input_json)
    config = _load_engine_config(root)
    driver = _build_driver(root, config)

    run_id = driver.enqueue(workflow_id, input_data)
    console.print(f"[blue]Started run: {run_id}[/blue]")
    asyncio.run(driver.process_queue_file(driver.queue_dir / f"{run_id}.json"))

    store = driver.store
    try:
        result = store.load_run(workflow_id, run_id)
    except FileNotFoundError:
        console.print(f"[red]Run {run_id} did not produce a run record[/red]")
        sys.exit(1)

    workflow = None
    try:
        workflow = store.load_workflow(workflow_id)
    except WorkflowDefinitionError:
        pass  # table falls back to node ids
    console.print(StatusTableRenderer(console).render_run_table(result, workflow))

    if result.status == RunStatus.COMPLETED:
        console.print("[green]Workflow completed successfully[/green]")
    else:
        console.print(f"[red]Workflow failed: {result.error}[/red]")
        sys.exit(1)


@main.command()
@click.pass_context
def daemon(ctx: click.Context) -> None:
    """Process queued runs until interrupted."""
    root = _get_root(ctx)
    config = _load_engine_config(root)
    driver = _build_driver(root, config)

    console.print(f"[blue]Watching {driver.queue_dir} (Ctrl+C to stop)[/blue]")
    try:
        asyncio.run(driver.start_daemon())
    except KeyboardInterrupt:
        driver.stop()
        console.print("[yellow]Daemon stopped[/yellow]")


@main.command()
@click.argument("workflow_id", required=False)
@click.option("--run", "run_id", help="Show the steps of this run")
@click.pass_context
def status(ctx: click.Context, workflow_id: str | None, run_id: str | None) -> None:
    """Show the latest run per workflow, or the steps of one run."""
    root = _get_root(ctx)
    store = RunStore(root)
    renderer = StatusTableRenderer(console)

    if run_id and not workflow_id:
        raise click.UsageError("--run requires WORKFLOW_ID")

    if workflow_id is None:
        index = load_runs_index(store.index_path)
        if not index.workflows:
            console.print("[yellow]No runs recorded yet[/yellow]")
            return
        console.print(renderer.render_index_table(index))
        return

    if run_id is None:
        runs = store.list_runs(workflow_id)
        if not runs:
            console.print(f"[yellow]No runs for workflow '{workflow_id}'[/yellow]")
            return
        run_id = runs[0].id

    try:
        result = store.load_run(workflow_id, run_id)
    except FileNotFoundError:
        console.print(f"[red]Run '{run_id}' not found for workflow '{workflow_id}'[/red]")
        sys.exit(1)

    workflow = None
    try:
        workflow = store.load_workflow(workflow_id)
    except WorkflowDefinitionError:
        pass  # table falls back to node ids
    console.print(renderer.render_run_table(result, workflow))
    if result.error:
        console.print(f"[red]Error:[/red] {result.error}")


@main.command()
def version() -> None:
    """Show version information."""
    from nodeflow import __version__

    console.print(f"nodeflow v{__version__}")
    console.print("Workflow graph engine")


if __name__ == "__main__":
    main()
