"""Run result models: what a build invocation reports back."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from layerforge.models.image import FinalArtifact
from layerforge.models.stages import StageFailure, StageRun, StageStatus
from layerforge.models.variant import VariantDescriptor


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunResult(BaseModel):
    """Outcome of one orchestrated build.

    On failure ``artifact`` is always ``None``: no partial composition is
    ever reported.
    """

    run_id: str
    status: RunStatus
    descriptor: VariantDescriptor
    stage_runs: dict[str, StageRun] = Field(default_factory=dict)
    failure: StageFailure | None = None
    artifact: FinalArtifact | None = None
    actions_executed: int = 0
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def statuses(self) -> dict[str, StageStatus]:
        return {name: run.status for name, run in self.stage_runs.items()}
