"""``layerforge resolve`` / ``layerforge plan``: inspect a variant without building."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from layerforge.cli.commands._flags import parse_flags
from layerforge.config import Settings
from layerforge.core.orchestrator import Orchestrator
from layerforge.core.resolver import describe_flags, resolve
from layerforge.monitor.renderer import RunRenderer

console = Console()


def resolve_cmd(
    flag: list[str] = typer.Option(
        None, "--flag", help="Build flag as KEY=VALUE (repeatable).",
    ),
    flags_file: Path = typer.Option(
        None, "--flags-file", help="JSON object of build flags.",
    ),
    as_json: bool = typer.Option(
        False, "--json", help="Print the descriptor as JSON.",
    ),
    list_flags: bool = typer.Option(
        False, "--list-flags", help="List recognised flags and their defaults.",
    ),
) -> None:
    """Show the variant descriptor a flag map resolves to."""
    if list_flags:
        for spec in describe_flags():
            console.print(f"[cyan]{spec.name}[/cyan] = {spec.default!r}  [dim]{spec.help}[/dim]")
        return

    descriptor = resolve(parse_flags(flag, flags_file))
    if as_json:
        console.print_json(descriptor.model_dump_json())
        return
    console.print(RunRenderer(console).render_descriptor(descriptor))


def plan_cmd(
    flag: list[str] = typer.Option(
        None, "--flag", help="Build flag as KEY=VALUE (repeatable).",
    ),
    flags_file: Path = typer.Option(
        None, "--flags-file", help="JSON object of build flags.",
    ),
) -> None:
    """List every stage's actions and whether each runs for the variant."""
    _, plan = Orchestrator(Settings()).plan(parse_flags(flag, flags_file))
    console.print(RunRenderer(console).render_plan(plan))
