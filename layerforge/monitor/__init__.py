"""Layerforge build monitor: Rich views over a finished ``RunResult``.

Modules
-------
renderer
    ``RunRenderer`` turns ``RunResult`` and plan listings into Rich
    renderables for terminal display.
"""

from layerforge.monitor.renderer import RunRenderer

__all__ = ["RunRenderer"]
