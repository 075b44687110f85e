"""Main Typer application: imports and registers all CLI commands.

Entry point: ``layerforge`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from layerforge.cli.commands.build import build_cmd
from layerforge.cli.commands.cache_cmd import cache_cmd
from layerforge.cli.commands.probe import probe_cmd
from layerforge.cli.commands.resolve_cmd import plan_cmd, resolve_cmd
from layerforge.config import Settings

app = typer.Typer(
    name="layerforge",
    help="Layerforge: variant-driven multi-stage image builds.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Logging level (defaults to LAYERFORGE_LOG_LEVEL).",
    ),
) -> None:
    """Configure logging before any command runs."""
    level = (log_level or Settings().log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


# Register subcommands
app.command(name="build", help="Build the image tree for one variant.")(build_cmd)
app.command(name="resolve", help="Show the resolved variant descriptor.")(resolve_cmd)
app.command(name="plan", help="List the actions each stage runs for a variant.")(plan_cmd)
app.command(name="cache", help="List cached stage results.")(cache_cmd)
app.command(name="probe", help="Check a running image's health endpoint.")(probe_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
