"""Layerforge build stages: registry mapping stage name to its definition.

Usage::

    from layerforge.stages import DEFAULT_STAGE_DEFINITIONS, get_stage

    graph = StageGraph(DEFAULT_STAGE_DEFINITIONS)
    stage = get_stage("runtime-assembly")
"""

from __future__ import annotations

from layerforge.models.stages import StageDefinition
from layerforge.stages.asset_build import ASSET_BUILD, FRONTEND_BUNDLE, FRONTEND_SOURCE
from layerforge.stages.dependency_build import (
    BACKEND_MANIFEST,
    DEPENDENCY_BUILD,
    PYTHON_PACKAGES,
)
from layerforge.stages.runtime_assembly import (
    APP_HOME,
    BACKEND_RUNTIME,
    BACKEND_SOURCE,
    BUNDLED_RUNTIME,
    RUNTIME_ASSEMBLY,
    runtime_environment,
)

# ---------------------------------------------------------------------------
# Stage registry: name -> definition
# ---------------------------------------------------------------------------

STAGE_REGISTRY: dict[str, StageDefinition] = {
    ASSET_BUILD.name: ASSET_BUILD,
    DEPENDENCY_BUILD.name: DEPENDENCY_BUILD,
    RUNTIME_ASSEMBLY.name: RUNTIME_ASSEMBLY,
}

# Declaration order; also the tie-break order for independent stages.
DEFAULT_STAGE_DEFINITIONS: tuple[StageDefinition, ...] = tuple(STAGE_REGISTRY.values())

# Source artifacts a build must be given, by name.
SOURCE_NAMES: tuple[str, ...] = (
    FRONTEND_SOURCE.name,
    BACKEND_MANIFEST.name,
    BACKEND_SOURCE.name,
)


def get_stage(name: str) -> StageDefinition:
    """Return the registered stage definition called *name*.

    Raises ``KeyError`` if the name is not registered.
    """
    try:
        return STAGE_REGISTRY[name]
    except KeyError:
        raise KeyError(
            f"Unknown stage {name!r}. "
            f"Registered stages: {sorted(STAGE_REGISTRY.keys())}"
        ) from None


__all__ = [
    # Registry
    "STAGE_REGISTRY",
    "DEFAULT_STAGE_DEFINITIONS",
    "SOURCE_NAMES",
    "get_stage",
    # Stages
    "ASSET_BUILD",
    "DEPENDENCY_BUILD",
    "RUNTIME_ASSEMBLY",
    # Artifacts
    "FRONTEND_SOURCE",
    "FRONTEND_BUNDLE",
    "BACKEND_MANIFEST",
    "PYTHON_PACKAGES",
    "BACKEND_SOURCE",
    "BACKEND_RUNTIME",
    "APP_HOME",
    "BUNDLED_RUNTIME",
    "runtime_environment",
]
