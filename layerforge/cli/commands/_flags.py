"""Build flag parsing shared by the ``build``, ``resolve`` and ``plan`` commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer


def parse_flags(pairs: list[str] | None, flags_file: Path | None = None) -> dict[str, Any]:
    """Merge a JSON flags file with ``KEY=VALUE`` pairs (pairs win).

    Raises ``typer.BadParameter`` on malformed input.
    """
    flags: dict[str, Any] = {}
    if flags_file is not None:
        try:
            loaded = json.loads(flags_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise typer.BadParameter(f"Cannot read flags file {flags_file}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise typer.BadParameter(f"Flags file {flags_file} must hold a JSON object")
        flags.update(loaded)

    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got {pair!r}")
        flags[key.strip()] = value
    return flags
