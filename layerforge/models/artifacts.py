"""Artifact and cache-entry models (immutable)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, ConfigDict, Field


class ArtifactKind(str, Enum):
    SOURCE = "source"
    STAGE_OUTPUT = "stage-output"


class ArtifactRef(BaseModel):
    """A reference to a directory tree produced by one stage or supplied as a source.

    ``producer`` is the owning stage name, or ``None`` for external source
    inputs.  ``install_path`` is where the artifact lands in the composed
    tree; it is a declared contract of the producing stage.  ``path`` and
    ``digest`` are filled in once the artifact is materialised.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    producer: str | None = None
    kind: ArtifactKind = ArtifactKind.STAGE_OUTPUT
    install_path: PurePosixPath | None = None
    path: Path | None = None
    digest: str = ""  # "sha256:<hex>" of the tree

    @property
    def is_source(self) -> bool:
        return self.producer is None

    def materialised(self, path: Path, digest: str) -> ArtifactRef:
        """Return a copy bound to a concrete location and content digest."""
        return self.model_copy(update={"path": Path(path), "digest": digest})


def source(name: str) -> ArtifactRef:
    """Declare an external source input."""
    return ArtifactRef(name=name, producer=None, kind=ArtifactKind.SOURCE)


def output(name: str, producer: str, install_path: str) -> ArtifactRef:
    """Declare a stage output with its install location in the final tree."""
    return ArtifactRef(
        name=name,
        producer=producer,
        kind=ArtifactKind.STAGE_OUTPUT,
        install_path=PurePosixPath(install_path),
    )


class CacheEntry(BaseModel):
    """Metadata for one cached stage result.

    Entries are never mutated.  Storing again under the same key creates a
    new ``entry_id`` and swaps the key's pointer to it; the superseded entry
    stays on disk until removed externally.
    """

    model_config = ConfigDict(frozen=True)

    stage: str
    key: str
    digest: str  # "sha256:<hex>" of the cached tree
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    path: Path | None = None
