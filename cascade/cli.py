"""CLI entry point for the cascade engine.

Commands:
- cascade init: Create .cascade/ with a default config
- cascade workflow import/validate: Manage workflow definitions
- cascade company add/list: Register companies and their API keys
- cascade ingest: Submit data for a company from a file
- cascade run: Run a company's workflows
- cascade retest: Re-run selected nodes of a workflow
- cascade alerts: List and resolve operational alerts
- cascade outbox drain: Deliver pending outbound tasks
- cascade usage: Show text-generation usage and cost
- cascade serve: Start the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import sys
from pathlib import Path
from typing import Any

import click
import httpx
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from cascade import __version__
from cascade.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    CascadeConfig,
    ConfigError,
    find_project_root,
    load_config,
)
from cascade.core.alerts import AlertDeduplicator
from cascade.core.engine import CascadeEngine, CascadeRequest, CascadeResult, build_engine
from cascade.core.graph_schema import WorkflowGraph
from cascade.core.ingestion import IngestionError, IngestionService
from cascade.core.llm import TextGenerationError
from cascade.core.outbox import OutboxQueue, OutboxWorker, default_handlers
from cascade.core.run_lock import CascadeError
from cascade.core.scheduler import SchedulerError
from cascade.core.state import Database
from cascade.metrics.dashboard import UsageDashboard
from cascade.metrics.usage import UsageAggregator

console = Console()


def get_repo_path() -> Path:
    """Get the project path (nearest directory holding .cascade/, else cwd)."""
    return find_project_root()


def _load_config(root: Path) -> CascadeConfig:
    try:
        return load_config(root)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def _open_db(root: Path) -> Database:
    return Database(_load_config(root).resolve_database_path(root))


def _load_document(path: str) -> Any:
    """Read a YAML or JSON file (JSON is valid YAML)."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing '{escape(path)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)


def _load_workflow(path: str) -> WorkflowGraph:
    data = _load_document(path)
    if not isinstance(data, dict):
        console.print(
            f"[red]Error: Invalid content in '{escape(path)}'. "
            f"Expected a mapping, got {type(data).__name__}.[/red]"
        )
        sys.exit(1)
    try:
        workflow = WorkflowGraph.model_validate(data)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)

    errors = workflow.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)
    return workflow


async def _close_clients(engine: CascadeEngine) -> None:
    await engine.llm.aclose()
    if engine.integrations is not None:
        await engine.integrations.aclose()


def _print_result(result: CascadeResult) -> None:
    status_style = "green" if result.status.value == "completed" and not result.errors else "yellow"
    console.print(
        Panel(
            f"Workflow: {escape(result.workflow_id)}\n"
            f"Company: {escape(result.company_id)}\n"
            f"Run: {result.run_id or '-'}\n"
            f"Status: [{status_style}]{result.status.value}[/{status_style}]\n"
            f"Executed: {len(result.executed)}  Cached: {len(result.cached)}  "
            f"Errors: {len(result.errors)}  Time: {result.execution_time_ms}ms",
            title="Cascade",
        )
    )
    if result.results:
        table = Table(show_header=True)
        table.add_column("Node", style="cyan")
        table.add_column("State")
        table.add_column("Output", overflow="fold")
        for node_id, node_result in result.results.items():
            output = node_result.output
            text = output if isinstance(output, str) else json.dumps(output, default=str)
            state = "[dim]cached[/dim]" if node_result.cached else "[green]executed[/green]"
            table.add_row(escape(node_id), state, escape(text[:120]))
        console.print(table)
    for error in result.errors:
        console.print(f"  [red]• {escape(error['node_id'])}: {escape(error['error'])}[/red]")
    if result.triggered_workflows:
        console.print(f"Also re-ran: {', '.join(result.triggered_workflows)}")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging level",
)
def main(log_level: str) -> None:
    """Cascade - reactive workflow execution engine.

    Re-runs only the workflow nodes whose inputs changed and serves
    everything else from the content-hashed node cache.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@main.command()
def init() -> None:
    """Initialize project for cascade."""
    repo_path = Path.cwd()
    cascade_dir = repo_path / CONFIG_DIR

    if (cascade_dir / CONFIG_FILE).exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    (cascade_dir / "locks").mkdir(parents=True, exist_ok=True)
    (cascade_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML)
    Database(CascadeConfig().resolve_database_path(repo_path))

    console.print("[green]Initialized cascade project[/green]")
    console.print(f"  Config: {cascade_dir / CONFIG_FILE}")
    console.print("\nNext steps:")
    console.print("  1. cascade workflow import <file>")
    console.print("  2. cascade company add <name> --workflow <id>")


# ========== Workflows ==========


@main.group()
def workflow() -> None:
    """Manage workflow definitions."""
    pass


@workflow.command("validate")
@click.argument("workflow_file", type=click.Path(exists=True))
def workflow_validate(workflow_file: str) -> None:
    """Validate a workflow definition file."""
    graph = _load_workflow(workflow_file)
    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(graph.nodes)}")
    console.print(f"  Edges: {len(graph.edges)}")


@workflow.command("import")
@click.argument("workflow_file", type=click.Path(exists=True))
def workflow_import(workflow_file: str) -> None:
    """Import (or replace) a workflow definition."""
    graph = _load_workflow(workflow_file)
    db = _open_db(get_repo_path())
    db.save_workflow(graph)
    console.print(f"[green]Imported workflow {escape(graph.id)}[/green] ({len(graph.nodes)} nodes)")


@workflow.command("list")
def workflow_list() -> None:
    """List stored workflows."""
    db = _open_db(get_repo_path())
    workflows = db.list_workflows()
    if not workflows:
        console.print("[dim]No workflows imported[/dim]")
        return

    table = Table(title="Workflows", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Nodes", justify="right")
    for graph in workflows:
        table.add_row(escape(graph.id), escape(graph.name), str(len(graph.nodes)))
    console.print(table)


# ========== Companies ==========


@main.group()
def company() -> None:
    """Manage companies."""
    pass


@company.command("add")
@click.argument("name")
@click.option("--workflow", "workflow_id", help="Workflow that processes the company's data")
@click.option("--rate-limit", type=int, default=60, help="Submissions allowed per minute")
@click.option("--id", "company_id", help="Company ID (generated if not provided)")
def company_add(
    name: str, workflow_id: str | None, rate_limit: int, company_id: str | None
) -> None:
    """Register a company and print its API key."""
    db = _open_db(get_repo_path())
    if workflow_id and db.get_workflow(workflow_id) is None:
        console.print(f"[red]Error:[/red] Workflow '{escape(workflow_id)}' not found")
        sys.exit(1)

    api_key = f"csk_{secrets.token_urlsafe(32)}"
    created = db.create_company(
        name,
        api_key=api_key,
        rate_limit_rpm=rate_limit,
        assigned_workflow_id=workflow_id,
        company_id=company_id,
    )
    console.print(f"[green]Company created:[/green] {escape(created.id)}")
    console.print(f"API key: [bold]{api_key}[/bold]")
    console.print("[dim]Store it now; only its digest is kept.[/dim]")


@company.command("list")
def company_list() -> None:
    """List registered companies."""
    db = _open_db(get_repo_path())
    table = Table(title="Companies", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Workflow")
    table.add_column("Rate limit", justify="right")
    for entry in db.list_companies():
        table.add_row(
            escape(entry.id),
            escape(entry.name),
            escape(entry.assigned_workflow_id or "-"),
            f"{entry.rate_limit_rpm}/min",
        )
    console.print(table)


# ========== Cascades ==========


@main.command()
@click.option("--company", "company_id", required=True, help="Company ID")
@click.argument("data_file", type=click.Path(exists=True))
def ingest(company_id: str, data_file: str) -> None:
    """Submit data for a company and cascade it.

    DATA_FILE holds either {"data": {...}, "metadata": {...}} or the data
    object itself.
    """
    repo_path = get_repo_path()
    engine = build_engine(_load_config(repo_path), repo_path)
    target = engine.db.get_company(company_id)
    if target is None:
        console.print(f"[red]Error:[/red] Company '{escape(company_id)}' not found")
        sys.exit(1)

    body = _load_document(data_file)
    if isinstance(body, dict) and "data" not in body:
        body = {"data": body}

    async def run() -> dict[str, Any]:
        try:
            return await IngestionService(engine.db, engine).submit(target, body, source_type="manual")
        finally:
            await _close_clients(engine)

    try:
        response = asyncio.run(run())
    except IngestionError as e:
        console.print(f"[red]Error ({e.status_code}):[/red] {escape(str(e))}")
        sys.exit(1)

    cascade = response["cascade"]
    console.print(f"[green]{escape(response['message'])}[/green]")
    console.print(f"  Submission: {response['submission_id']}")
    console.print(f"  Executed: {', '.join(cascade['executed']) or '-'}")
    console.print(f"  Cached: {', '.join(cascade['cached']) or '-'}")
    console.print(f"  Time: {cascade['execution_time_ms']}ms")


@main.command()
@click.option("--company", "company_id", required=True, help="Company ID")
@click.option("--workflow", "workflow_ids", multiple=True, help="Workflow ID (repeatable)")
@click.option("--force", is_flag=True, help="Re-execute every node, ignoring the cache")
@click.option("--empty-only", is_flag=True, help="Only workflows with nodes lacking output")
def run(company_id: str, workflow_ids: tuple[str, ...], force: bool, empty_only: bool) -> None:
    """Run a company's workflows."""
    repo_path = get_repo_path()
    engine = build_engine(_load_config(repo_path), repo_path)

    async def run_all() -> list[CascadeResult]:
        try:
            return await engine.run_company_workflows(
                company_id, list(workflow_ids) or None, force=force, empty_only=empty_only
            )
        finally:
            await _close_clients(engine)

    try:
        results = asyncio.run(run_all())
    except (CascadeError, SchedulerError, TextGenerationError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if not results:
        console.print("[yellow]No workflows to run[/yellow]")
        return
    for result in results:
        _print_result(result)
    if any(result.errors for result in results):
        sys.exit(1)


@main.command()
@click.argument("workflow_id")
@click.argument("node_ids", nargs=-1, required=True)
@click.option("--company", "company_id", help="Company ID (default: config default_company_id)")
def retest(workflow_id: str, node_ids: tuple[str, ...], company_id: str | None) -> None:
    """Re-run NODE_IDS plus their inputs and dependents."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    company_id = company_id or config.default_company_id
    if not company_id:
        console.print("[red]Error:[/red] --company is required (no default_company_id configured)")
        sys.exit(1)
    engine = build_engine(config, repo_path)

    async def run_retest() -> CascadeResult:
        try:
            return await engine.run(
                CascadeRequest(
                    company_id=company_id,
                    workflow_id=workflow_id,
                    trigger="retest",
                    target_node_ids=list(node_ids),
                )
            )
        finally:
            await _close_clients(engine)

    try:
        result = asyncio.run(run_retest())
    except (CascadeError, SchedulerError, TextGenerationError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _print_result(result)


# ========== Alerts ==========


@main.group(invoke_without_command=True)
@click.option("--all", "show_all", is_flag=True, help="Include resolved alerts")
@click.pass_context
def alerts(ctx: click.Context, show_all: bool) -> None:
    """List operational alerts."""
    if ctx.invoked_subcommand is not None:
        return

    items = AlertDeduplicator(_open_db(get_repo_path())).list_alerts(include_resolved=show_all)
    if not items:
        console.print("[green]No open alerts[/green]")
        return

    table = Table(title="Alerts", show_header=True)
    table.add_column("ID", justify="right")
    table.add_column("Severity")
    table.add_column("Type", style="cyan")
    table.add_column("Title")
    table.add_column("Count", justify="right")
    table.add_column("Last seen")
    severity_styles = {"critical": "red", "warning": "yellow", "info": "blue"}
    for alert in items:
        style = severity_styles.get(alert.severity.value, "white")
        title = escape(alert.title) + (" [dim](resolved)[/dim]" if alert.is_resolved else "")
        table.add_row(
            str(alert.id),
            f"[{style}]{alert.severity.value}[/{style}]",
            escape(alert.alert_type),
            title,
            str(alert.occurrence_count),
            alert.last_seen_at[:19],
        )
    console.print(table)


@alerts.command("resolve")
@click.argument("alert_id", type=int)
def alerts_resolve(alert_id: int) -> None:
    """Mark an alert resolved."""
    deduplicator = AlertDeduplicator(_open_db(get_repo_path()))
    if deduplicator.resolve(alert_id):
        console.print(f"[green]Resolved alert {alert_id}[/green]")
        return
    if deduplicator.get(alert_id) is None:
        console.print(f"[red]Error:[/red] Alert {alert_id} not found")
    else:
        console.print(f"[yellow]Alert {alert_id} is already resolved[/yellow]")
    sys.exit(1)


# ========== Outbox ==========


@main.group()
def outbox() -> None:
    """Outbound task queue."""
    pass


@outbox.command("drain")
@click.option("--limit", type=int, default=100, help="Maximum tasks per pass")
def outbox_drain(limit: int) -> None:
    """Deliver every task that is currently due."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    db = Database(config.resolve_database_path(repo_path))
    queue = OutboxQueue(db, config.outbox)

    async def drain() -> int:
        async with httpx.AsyncClient(timeout=30.0) as client:
            worker = OutboxWorker(queue, default_handlers(db, config.sync, client))
            total = 0
            while True:
                delivered = await worker.drain(limit)
                total += delivered
                if delivered == 0:
                    return total

    delivered = asyncio.run(drain())
    counts = queue.counts()
    console.print(f"[green]Delivered {delivered} task(s)[/green]")
    for status, count in sorted(counts.items()):
        console.print(f"  {status}: {count}")


# ========== Usage ==========


@main.command()
@click.option("--days", type=int, default=30, help="Number of days to analyze")
def usage(days: int) -> None:
    """Show text-generation usage and estimated cost."""
    try:
        db = _open_db(get_repo_path())
        UsageDashboard(UsageAggregator(db), console).show(days)
    except Exception as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


# ========== Server ==========


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8000, help="Port")
def serve(host: str, port: int) -> None:
    """Start the HTTP API."""
    import uvicorn

    from cascade.studio.server import app

    console.print(f"[blue]Serving cascade API on http://{host}:{port}[/blue]")
    uvicorn.run(app, host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"Cascade v{__version__}")
    console.print("Reactive workflow execution engine")


if __name__ == "__main__":
    main()
