"""Variant configuration resolver: flat build flags to a ``VariantDescriptor``.

``resolve()`` is a pure, total function of its flag map: it never reads the
process environment, the filesystem or the network, and every input yields
a descriptor.  That determinism is what makes descriptor subsets safe to
fold into stage cache keys.

Resolution order
----------------
1. Apply documented defaults for unset flags.
2. Normalize raw truthy values to booleans.
3. Enforce minimal-footprint dominance over model prefetch.
4. Fall back to the default owner identity for absent or invalid IDs.
5. Default permission hardening from the chosen base environment.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, NamedTuple

from layerforge.models.variant import ModelKind, ModelPrefetch, VariantDescriptor

logger = logging.getLogger(__name__)


class ResolutionError(ValueError):
    """Raised for malformed or contradictory flags.

    Unreachable today because every flag has a total default; reserved for
    stricter validation modes.
    """


class FlagSpec(NamedTuple):
    name: str
    default: str
    field: str
    help: str


FLAG_SPECS: tuple[FlagSpec, ...] = (
    FlagSpec("USE_CUDA", "false", "accelerator_enabled", "Install accelerator (CUDA) framework builds."),
    FlagSpec("USE_CUDA_VER", "cu128", "accelerator_variant", "Accelerator wheel variant; ignored unless USE_CUDA."),
    FlagSpec("USE_OLLAMA", "false", "bundled_runtime_enabled", "Bundle the local inference runtime."),
    FlagSpec("USE_SLIM", "true", "minimal_footprint", "Minimal footprint: skip all model prefetch."),
    FlagSpec("USE_PERMISSION_HARDENING", "", "permission_hardening", "Group-writable tree for arbitrary runtime UIDs."),
    FlagSpec("BASE_ENVIRONMENT", "ubi9", "base_environment", "Base environment; decides the hardening default."),
    FlagSpec("USE_EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2", "embedding_model", "Embedding model."),
    FlagSpec("USE_RERANKING_MODEL", "", "reranking_model", "Reranking model (optional)."),
    FlagSpec("USE_AUXILIARY_EMBEDDING_MODEL", "TaylorAI/bge-micro-v2", "auxiliary_embedding_model", "Auxiliary embedding model."),
    FlagSpec("USE_WHISPER_MODEL", "base", "whisper_model", "Speech-to-text model size."),
    FlagSpec("USE_TIKTOKEN_ENCODING_NAME", "cl100k_base", "tiktoken_encoding", "Tokenizer encoding."),
    FlagSpec("BUILD_HASH", "dev-build", "build_identifier", "Build identifier stamped into the runtime."),
    FlagSpec("UID", "1001", "owner_uid", "Numeric owner of the composed tree."),
    FlagSpec("GID", "0", "owner_gid", "Numeric group of the composed tree."),
)

_KNOWN_FLAGS: dict[str, FlagSpec] = {spec.name: spec for spec in FLAG_SPECS}

DEFAULT_UID = 1001
DEFAULT_GID = 0
DEFAULT_BASE_ENVIRONMENT = "ubi9"

# Safe hardening default per base environment.  Restricted platforms run the
# image under an arbitrary UID in the root group, so the tree must be
# group-writable there.
HARDENING_DEFAULTS: dict[str, bool] = {
    "ubi9": True,
    "ubi9-minimal": True,
    "openshift": True,
    "debian": False,
    "debian-slim": False,
    "alpine": False,
}

_TRUTHY = frozenset({"true", "1", "yes", "on"})


def parse_bool(raw: Any) -> bool:
    """Normalize a raw flag value: ``"true"``/``"1"``/``"yes"``/``"on"`` (any case) are true."""
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        return raw == 1
    return str(raw).strip().lower() in _TRUTHY


def _parse_id(raw: Any, default: int) -> int:
    if isinstance(raw, bool):
        return default
    if isinstance(raw, int):
        return raw if raw >= 0 else default
    try:
        value = int(str(raw).strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _normalize_keys(flags: Mapping[str, Any]) -> dict[str, Any]:
    """Upper-case flag names and drop unset values (``None`` or blank)."""
    normalized: dict[str, Any] = {}
    for key, value in flags.items():
        name = str(key).strip().upper()
        if name not in _KNOWN_FLAGS:
            logger.debug("Ignoring unknown build flag %r", key)
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        normalized[name] = value.strip() if isinstance(value, str) else value
    return normalized


def _prefetch_list(
    embedding: str,
    reranking: str,
    auxiliary: str,
    whisper: str,
    tiktoken: str,
) -> tuple[ModelPrefetch, ...]:
    candidates = [
        (ModelKind.EMBEDDING, embedding),
        (ModelKind.RERANKING, reranking),
        (ModelKind.AUXILIARY_EMBEDDING, auxiliary),
        (ModelKind.WHISPER, whisper),
        (ModelKind.TIKTOKEN, tiktoken),
    ]
    return tuple(ModelPrefetch(kind=kind, name=name) for kind, name in candidates if name)


def resolve(flags: Mapping[str, Any] | None = None) -> VariantDescriptor:
    """Resolve a flat flag map into a ``VariantDescriptor``.

    Unset flags take their documented defaults; unknown flags are ignored.
    Calling twice with the same map yields equal descriptors.
    """
    raw = _normalize_keys(flags or {})

    def get(name: str) -> Any:
        return raw.get(name, _KNOWN_FLAGS[name].default)

    accelerator_enabled = parse_bool(get("USE_CUDA"))
    minimal_footprint = parse_bool(get("USE_SLIM"))
    base_environment = str(get("BASE_ENVIRONMENT")).lower()

    if "USE_PERMISSION_HARDENING" in raw:
        permission_hardening = parse_bool(raw["USE_PERMISSION_HARDENING"])
    else:
        permission_hardening = HARDENING_DEFAULTS.get(base_environment, True)

    embedding = str(get("USE_EMBEDDING_MODEL"))
    reranking = str(get("USE_RERANKING_MODEL"))
    auxiliary = str(get("USE_AUXILIARY_EMBEDDING_MODEL"))
    whisper = str(get("USE_WHISPER_MODEL"))
    tiktoken = str(get("USE_TIKTOKEN_ENCODING_NAME"))

    prefetch: tuple[ModelPrefetch, ...] = ()
    if not minimal_footprint:
        prefetch = _prefetch_list(embedding, reranking, auxiliary, whisper, tiktoken)

    return VariantDescriptor(
        accelerator_enabled=accelerator_enabled,
        bundled_runtime_enabled=parse_bool(get("USE_OLLAMA")),
        minimal_footprint=minimal_footprint,
        permission_hardening=permission_hardening,
        accelerator_variant=str(get("USE_CUDA_VER")) if accelerator_enabled else None,
        build_identifier=str(get("BUILD_HASH")),
        owner_uid=_parse_id(get("UID"), DEFAULT_UID),
        owner_gid=_parse_id(get("GID"), DEFAULT_GID),
        base_environment=base_environment,
        embedding_model=embedding,
        reranking_model=reranking,
        auxiliary_embedding_model=auxiliary,
        whisper_model=whisper,
        tiktoken_encoding=tiktoken,
        model_prefetch=prefetch,
    )


def describe_flags() -> list[FlagSpec]:
    """Return the documented flag table (name, default, field, help)."""
    return list(FLAG_SPECS)
