"""Resolved build-variant models.

A ``VariantDescriptor`` is the only carrier of build configuration through
the orchestrator.  It is produced once by the resolver and threaded,
unchanged, through every stage, the cache key, the composer and the
normalizer.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ModelKind(str, Enum):
    """Categories of model artifacts that can be prefetched into the image."""

    EMBEDDING = "embedding"
    RERANKING = "reranking"
    AUXILIARY_EMBEDDING = "auxiliary_embedding"
    WHISPER = "whisper"
    TIKTOKEN = "tiktoken"


class ModelPrefetch(BaseModel):
    """A single model artifact scheduled for download at build time."""

    model_config = ConfigDict(frozen=True)

    kind: ModelKind
    name: str


class VariantDescriptor(BaseModel):
    """Fully-resolved, internally consistent build variant.

    Invariants
    ----------
    * ``model_prefetch`` is empty whenever ``minimal_footprint`` is true.
    * ``accelerator_variant`` is ``None`` whenever ``accelerator_enabled``
      is false, so no action can branch on it.
    """

    model_config = ConfigDict(frozen=True)

    accelerator_enabled: bool = False
    bundled_runtime_enabled: bool = False
    minimal_footprint: bool = True
    permission_hardening: bool = True
    accelerator_variant: str | None = None
    build_identifier: str = "dev-build"
    owner_uid: int = 1001
    owner_gid: int = 0
    base_environment: str = "ubi9"

    # Model configuration exported into the runtime environment
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    reranking_model: str = ""
    auxiliary_embedding_model: str = "TaylorAI/bge-micro-v2"
    whisper_model: str = "base"
    tiktoken_encoding: str = "cl100k_base"

    # Effective prefetch view (cleared under minimal footprint)
    model_prefetch: tuple[ModelPrefetch, ...] = ()

    def prefetch_of(self, *kinds: ModelKind) -> list[ModelPrefetch]:
        """Return the prefetch entries matching any of *kinds*, in order."""
        return [m for m in self.model_prefetch if m.kind in kinds]

    def subset(self, fields: set[str] | frozenset[str]) -> dict:
        """Return a JSON-ready dict of only the named descriptor fields."""
        return self.model_dump(mode="json", include=set(fields))
