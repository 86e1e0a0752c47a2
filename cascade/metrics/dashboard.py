"""Rich-based usage dashboard."""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cascade.metrics.usage import UsageAggregator


class UsageDashboard:
    """Terminal view of generation usage and cost.

    USAGE:
        dashboard = UsageDashboard(aggregator)
        dashboard.show(days=7)
    """

    def __init__(self, aggregator: UsageAggregator, console: Console | None = None):
        self.aggregator = aggregator
        self.console = console or Console()

    def show(self, days: int = 30) -> None:
        self.console.print()
        self.console.rule(f"[bold blue]Generation Usage - Last {days} Days[/bold blue]")

        self._show_summary(days)
        self.console.print()

        self._show_models(days)
        self.console.print()

        self._show_workflows(days)

    def _show_summary(self, days: int) -> None:
        stats = self.aggregator.summary(days)

        table = Table(title="Summary", show_header=False, box=None)
        table.add_column("Metric", style="dim")
        table.add_column("Value", style="bold")

        table.add_row("Calls", str(stats["total_calls"]))
        table.add_row("Tokens", f"{stats['total_tokens']:,}")
        table.add_row("Estimated Cost", f"${stats['estimated_cost']:.4f}")
        table.add_row("Models", str(stats["unique_models"]))
        for category, cost in sorted(stats["cost_by_category"].items()):
            table.add_row(f"  {category}", f"${cost:.4f}")

        self.console.print(Panel(table))

    def _show_models(self, days: int) -> None:
        models = self.aggregator.by_model(days)
        if not models:
            self.console.print("[dim]No usage recorded[/dim]")
            return

        table = Table(title="Usage by Model")
        table.add_column("Model", style="cyan")
        table.add_column("Calls", justify="right")
        table.add_column("Prompt", justify="right")
        table.add_column("Completion", justify="right")
        table.add_column("Cost", justify="right")

        for usage in models:
            table.add_row(
                usage.model,
                str(usage.calls),
                f"{usage.prompt_tokens:,}",
                f"{usage.completion_tokens:,}",
                usage.formatted_cost,
            )

        self.console.print(table)

    def _show_workflows(self, days: int) -> None:
        workflows = self.aggregator.by_workflow(days)
        if not workflows:
            return

        table = Table(title="Usage by Workflow")
        table.add_column("Workflow", style="cyan")
        table.add_column("Calls", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")

        for usage in workflows:
            table.add_row(
                usage.workflow_id,
                str(usage.calls),
                f"{usage.total_tokens:,}",
                f"${usage.estimated_cost:.4f}",
            )

        self.console.print(table)
