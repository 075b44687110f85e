"""Layerforge data models: all Pydantic v2, frozen except execution records."""

from layerforge.models.actions import (
    ALWAYS,
    ActionContext,
    Condition,
    ProvisioningAction,
    when,
)
from layerforge.models.artifacts import ArtifactKind, ArtifactRef, CacheEntry
from layerforge.models.image import FinalArtifact, LivenessProbe
from layerforge.models.reports import RunResult, RunStatus
from layerforge.models.stages import (
    COMPLETED_STATES,
    VALID_TRANSITIONS,
    InvalidTransitionError,
    StageDefinition,
    StageFailure,
    StageRun,
    StageStatus,
)
from layerforge.models.variant import ModelKind, ModelPrefetch, VariantDescriptor

__all__ = [
    # variant
    "ModelKind",
    "ModelPrefetch",
    "VariantDescriptor",
    # actions
    "ALWAYS",
    "ActionContext",
    "Condition",
    "ProvisioningAction",
    "when",
    # artifacts
    "ArtifactKind",
    "ArtifactRef",
    "CacheEntry",
    # stages
    "COMPLETED_STATES",
    "VALID_TRANSITIONS",
    "InvalidTransitionError",
    "StageDefinition",
    "StageFailure",
    "StageRun",
    "StageStatus",
    # image
    "FinalArtifact",
    "LivenessProbe",
    # reports
    "RunResult",
    "RunStatus",
]
