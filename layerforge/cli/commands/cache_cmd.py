"""``layerforge cache``: list the current entry for every cached stage key."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from layerforge.config import Settings
from layerforge.core.artifact_cache import ArtifactCache

console = Console()


def cache_cmd(
    stage: str = typer.Option(
        None, "--stage", "-s", help="Only list entries for this stage.",
    ),
    cache_dir: Path = typer.Option(
        None, "--cache", help="Artifact cache directory (overrides settings).",
    ),
    verify: bool = typer.Option(
        True, "--verify/--no-verify", help="Re-fingerprint each cached tree.",
    ),
) -> None:
    """List cached stage results."""
    root = cache_dir or Settings().cache_path
    if not root.exists():
        console.print(f"[dim]No cache at {root}.[/dim]")
        return

    entries = list(ArtifactCache(root, verify=verify).entries(stage))
    if not entries:
        console.print("[dim]No cache entries.[/dim]")
        return

    table = Table(title=f"Artifact Cache ({root})", header_style="bold cyan")
    table.add_column("Stage", style="cyan")
    table.add_column("Key", style="dim")
    table.add_column("Entry")
    table.add_column("Digest", style="dim")
    table.add_column("Created")
    for entry in entries:
        table.add_row(
            entry.stage,
            entry.key[:16],
            entry.entry_id[:8],
            entry.digest.removeprefix("sha256:")[:16],
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
