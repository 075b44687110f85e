"""Rich terminal renderer for Layerforge build results.

Color scheme
------------
- green     : SUCCEEDED
- cyan      : CACHED
- red       : FAILED
- yellow    : RUNNING
- dim       : PENDING
- magenta   : SKIPPED
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from layerforge.models.actions import ProvisioningAction
from layerforge.models.reports import RunResult
from layerforge.models.stages import StageDefinition, StageStatus
from layerforge.models.variant import VariantDescriptor

# ---------------------------------------------------------------------------
# Status -> Rich style mapping
# ---------------------------------------------------------------------------

_STATUS_STYLES: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "bold green",
    StageStatus.CACHED: "bold cyan",
    StageStatus.FAILED: "bold red",
    StageStatus.RUNNING: "bold yellow",
    StageStatus.PENDING: "dim",
    StageStatus.SKIPPED: "bold magenta",
}

_STATUS_LABELS: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StageStatus.CACHED: "[cyan]CACHED[/cyan]",
    StageStatus.FAILED: "[bold red]FAILED[/bold red]",
    StageStatus.RUNNING: "[yellow]RUNNING[/yellow]",
    StageStatus.PENDING: "[dim]PENDING[/dim]",
    StageStatus.SKIPPED: "[magenta]SKIPPED[/magenta]",
}


class RunRenderer:
    """Renders run results, descriptors and plans as Rich output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Run result
    # ------------------------------------------------------------------

    def render_result(self, result: RunResult) -> Panel:
        """Render a RunResult as a Panel holding the stage table and summary."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("Status", min_width=12, justify="center")
        table.add_column("Key", style="dim", width=14)
        table.add_column("Actions", justify="right", width=8)
        table.add_column("Details", min_width=20)

        for i, (name, run) in enumerate(result.stage_runs.items()):
            style = _STATUS_STYLES.get(run.status, "")
            details = "[dim]-[/dim]"
            if run.error is not None:
                details = f"[red]{run.error.action}: {run.error.cause}[/red]"
            elif run.started_at and run.finished_at:
                elapsed = (run.finished_at - run.started_at).total_seconds()
                details = f"[dim]{elapsed:.2f}s[/dim]"
            table.add_row(
                str(i),
                f"[{style}]{name}[/{style}]",
                _STATUS_LABELS.get(run.status, run.status.value),
                run.cache_key[:12] or "[dim]-[/dim]",
                str(len(run.executed_actions)),
                details,
            )

        summary_parts: list[str] = [
            f"[bold]Run:[/bold] {result.run_id}",
            f"[bold]Build:[/bold] {result.descriptor.build_identifier}",
            f"[bold]Actions executed:[/bold] {result.actions_executed}",
        ]
        if result.artifact is not None:
            summary_parts.append(f"[bold]Version:[/bold] {result.artifact.version}")
            summary_parts.append(f"[bold]Tree:[/bold] {result.artifact.root}")
        if result.failure is not None:
            retry = " (retryable)" if result.failure.retryable else ""
            summary_parts.append(
                f"[bold red]Failed:[/bold red] {result.failure.stage}/"
                f"{result.failure.action}{retry}: {result.failure.cause}"
            )

        border = "green" if result.succeeded else "red"
        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary_parts))),
            title=f"[bold]Layerforge Build {result.status.value.upper()}[/bold]",
            border_style=border,
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Descriptor and plan
    # ------------------------------------------------------------------

    def render_descriptor(self, descriptor: VariantDescriptor) -> Table:
        table = Table(title="Resolved Variant", show_header=True, header_style="bold cyan")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for field, value in descriptor.model_dump(mode="json").items():
            if field == "model_prefetch":
                value = ", ".join(f"{m['kind']}={m['name']}" for m in value) or "-"
            table.add_row(field, str(value))
        return table

    def render_plan(
        self, plan: list[tuple[StageDefinition, list[tuple[ProvisioningAction, bool]]]]
    ) -> Table:
        """One row per action, marking whether it runs for the variant."""
        table = Table(title="Build Plan", show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Stage", style="cyan")
        table.add_column("Action")
        table.add_column("Runs", justify="center")
        table.add_column("Condition", style="dim")
        table.add_column("Description", style="dim")
        for stage, actions in plan:
            for i, (action, applies) in enumerate(actions):
                table.add_row(
                    stage.name if i == 0 else "",
                    action.name,
                    "[green]yes[/green]" if applies else "[dim]no[/dim]",
                    action.condition.describe(),
                    action.description,
                )
        return table

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_result(self, result: RunResult) -> None:
        self.console.print(self.render_result(result))
