"""Stage definition and execution-record models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from layerforge.models.actions import ProvisioningAction
from layerforge.models.artifacts import ArtifactRef


class StageStatus(str, Enum):
    """Lifecycle of a single stage within one run."""

    PENDING = "pending"
    CACHED = "cached"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# Terminal states (CACHED, SUCCEEDED, FAILED, SKIPPED) have no outgoing transitions.
VALID_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.CACHED, StageStatus.SKIPPED},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED},
    StageStatus.CACHED: set(),
    StageStatus.SUCCEEDED: set(),
    StageStatus.FAILED: set(),
    StageStatus.SKIPPED: set(),
}

COMPLETED_STATES: frozenset[StageStatus] = frozenset(
    {StageStatus.SUCCEEDED, StageStatus.CACHED}
)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested stage status transition is not valid."""


class StageDefinition(BaseModel):
    """Immutable definition of one build stage.

    The DAG is encoded by ``inputs``: an input whose ``producer`` names
    another stage creates a producer -> consumer edge.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    inputs: tuple[ArtifactRef, ...] = ()
    actions: tuple[ProvisioningAction, ...] = ()
    outputs: tuple[ArtifactRef, ...] = ()
    actions_version: str = "1"

    @property
    def source_inputs(self) -> list[ArtifactRef]:
        return [ref for ref in self.inputs if ref.is_source]

    @property
    def stage_inputs(self) -> list[ArtifactRef]:
        return [ref for ref in self.inputs if not ref.is_source]

    @property
    def variant_fields(self) -> frozenset[str]:
        """Descriptor fields any action in this stage conditions on or reads."""
        fields: set[str] = set()
        for action in self.actions:
            fields |= action.fields
        return frozenset(fields)


class StageFailure(BaseModel):
    """Which stage and action failed, and why."""

    model_config = ConfigDict(frozen=True)

    stage: str
    action: str
    cause: str
    retryable: bool = False


class StageRun(BaseModel):
    """Mutable execution record for one stage in one run."""

    name: str
    status: StageStatus = StageStatus.PENDING
    cache_key: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: StageFailure | None = None
    artifact: ArtifactRef | None = None
    executed_actions: list[str] = Field(default_factory=list)

    def transition(self, target: StageStatus) -> None:
        """Move to *target*, stamping timestamps; raises on an invalid move."""
        allowed = VALID_TRANSITIONS.get(self.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition {self.name} from {self.status.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        now = datetime.now(timezone.utc)
        if target == StageStatus.RUNNING:
            self.started_at = now
        else:
            self.started_at = self.started_at or now
            self.finished_at = now
        self.status = target

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.status]
