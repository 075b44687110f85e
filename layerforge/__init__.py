"""Layerforge: variant-driven multi-stage build orchestrator.

Resolves a flat map of build flags into a variant descriptor, runs the
stages of the build graph (reusing cached stage results where their
inputs are unchanged), and composes the outputs into one runnable tree
owned by a single identity.
"""

__version__ = "0.1.0"
__description__ = "Variant-driven multi-stage build orchestrator"

from layerforge.core.orchestrator import Orchestrator
from layerforge.core.resolver import resolve
from layerforge.cli.app import app

__all__ = ["Orchestrator", "resolve", "app", "__version__"]
