"""``layerforge probe``: run the liveness check against a running image."""

from __future__ import annotations

import typer
from rich.console import Console

from layerforge.health import DEFAULT_HEALTH_URL, check_liveness

console = Console()


def probe_cmd(
    url: str = typer.Option(
        DEFAULT_HEALTH_URL, "--url", "-u", help="Health endpoint to probe.",
    ),
    timeout: float = typer.Option(
        10.0, "--timeout", "-t", help="Request timeout in seconds.",
    ),
) -> None:
    """Exit 0 when the endpoint reports ``status: true``, else 1."""
    if check_liveness(url, timeout):
        console.print(f"[green]alive[/green] {url}")
        return
    console.print(f"[bold red]not alive[/bold red] {url}")
    raise typer.Exit(code=1)
