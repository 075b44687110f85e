"""``layerforge build``: resolve flags, run every stage, compose the image tree.

Exits 0 when the run succeeds and 1 when any stage, composition or
normalization fails.  The per-stage table is printed either way.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from layerforge.cli.commands._flags import parse_flags
from layerforge.config import Settings
from layerforge.core.orchestrator import Orchestrator
from layerforge.monitor.renderer import RunRenderer

console = Console()


def build_cmd(
    frontend: Path = typer.Option(
        ..., "--frontend", "-f", help="Frontend source tree.",
    ),
    manifest: Path = typer.Option(
        ..., "--manifest", "-m", help="Backend dependency manifest (file or directory).",
    ),
    backend: Path = typer.Option(
        ..., "--backend", "-b", help="Backend source tree.",
    ),
    flag: list[str] = typer.Option(
        None, "--flag", help="Build flag as KEY=VALUE (repeatable).",
    ),
    flags_file: Path = typer.Option(
        None, "--flags-file", help="JSON object of build flags.",
    ),
    force: bool = typer.Option(
        False, "--force", help="Ignore cached stage results (results are still stored).",
    ),
    cache_dir: Path = typer.Option(
        None, "--cache", help="Artifact cache directory (overrides settings).",
    ),
    output_dir: Path = typer.Option(
        None, "--output", "-o", help="Directory the composed tree is written to.",
    ),
    workers: int = typer.Option(
        None, "--workers", "-w", help="Maximum concurrently running stages.",
    ),
) -> None:
    """Build the image tree for one variant."""
    flags = parse_flags(flag, flags_file)

    overrides: dict[str, object] = {}
    if cache_dir is not None:
        overrides["cache_path"] = cache_dir
    if output_dir is not None:
        overrides["output_path"] = output_dir
    if workers is not None:
        overrides["max_workers"] = workers
    settings = Settings(**overrides)

    orchestrator = Orchestrator(settings)
    result = orchestrator.build(
        flags,
        {"frontend-src": frontend, "backend-manifest": manifest, "backend-src": backend},
        force=force,
    )

    RunRenderer(console).print_result(result)
    if not result.succeeded:
        raise typer.Exit(code=1)
