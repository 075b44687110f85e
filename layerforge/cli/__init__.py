"""Layerforge CLI: Typer-based command-line interface.

Provides the ``layerforge`` command with subcommands for running builds,
inspecting how build flags resolve, listing the action plan for a
variant, browsing the artifact cache and probing a running image.

All output uses Rich for formatted terminal display.
"""
