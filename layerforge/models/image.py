"""Composed output models: the final runnable tree and its declared runtime contract."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_LIVENESS_COMMAND: tuple[str, ...] = (
    "sh",
    "-c",
    "curl --silent --fail http://localhost:${PORT:-8080}/health"
    " | jq -ne 'input.status == true' || exit 1",
)


class LivenessProbe(BaseModel):
    """A command whose exit status decides liveness.

    The probed endpoint's semantics are owned externally; the contract is
    only "exit success and emit a boolean-true signal".
    """

    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...] = DEFAULT_LIVENESS_COMMAND
    interval_seconds: int = 30
    timeout_seconds: int = 10
    start_period_seconds: int = 60
    retries: int = 3


class FinalArtifact(BaseModel):
    """The composed, normalized output tree plus its runtime declaration."""

    model_config = ConfigDict(frozen=True)

    root: Path
    build_identifier: str
    version: str
    environment: dict[str, str] = Field(default_factory=dict)
    entrypoint: tuple[str, ...] = ("bash", "start.sh")
    workdir: str = "/app/backend"
    user: str = "1001:0"
    exposed_port: int = 8080
    liveness: LivenessProbe = LivenessProbe()
    stage_digests: dict[str, str] = Field(default_factory=dict)

    @property
    def manifest_path(self) -> Path:
        return self.root / "image-config.json"
