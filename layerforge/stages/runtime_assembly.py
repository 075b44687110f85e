"""Runtime assembly: backend runtime files, cache layout, optional runtime and models.

Consumes both upstream outputs, so it is dispatched only after the asset
and dependency builds have succeeded or been served from cache.  It is the
only stage whose actions read ``build_identifier``.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path

from layerforge.core.hasher import DEFAULT_EXCLUDES
from layerforge.models.actions import ActionContext, ProvisioningAction, when
from layerforge.models.artifacts import output, source
from layerforge.models.stages import StageDefinition
from layerforge.models.variant import ModelKind
from layerforge.stages.asset_build import FRONTEND_BUNDLE
from layerforge.stages.dependency_build import PYTHON_PACKAGES

STAGE_NAME = "runtime-assembly"

BACKEND_SOURCE = source("backend-src")
BACKEND_RUNTIME = output("backend-runtime", STAGE_NAME, "app/backend")
APP_HOME = output("app-home", STAGE_NAME, "home/app")
BUNDLED_RUNTIME = output("bundled-runtime", STAGE_NAME, "usr/local")

# Relative to BACKEND_RUNTIME
WHISPER_CACHE = Path("data/cache/whisper/models")
EMBEDDING_CACHE = Path("data/cache/embedding/models")
TIKTOKEN_CACHE = Path("data/cache/tiktoken")

# Relative to APP_HOME
CHROMA_TELEMETRY = Path(".cache/chroma/telemetry_user_id")
TELEMETRY_OPT_OUT_ID = "00000000-0000-0000-0000-000000000000"

BUILD_INFO_FILE = "build-info.json"


def _copy_backend(ctx: ActionContext) -> None:
    shutil.copytree(
        ctx.input_path(BACKEND_SOURCE.name),
        ctx.output(BACKEND_RUNTIME.name),
        symlinks=True,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(*DEFAULT_EXCLUDES),
    )


def _create_cache_layout(ctx: ActionContext) -> None:
    backend = ctx.output(BACKEND_RUNTIME.name)
    for rel in (WHISPER_CACHE, EMBEDDING_CACHE, TIKTOKEN_CACHE):
        (backend / rel).mkdir(parents=True, exist_ok=True)
    (ctx.output(APP_HOME.name) / CHROMA_TELEMETRY.parent).mkdir(parents=True, exist_ok=True)


def _seed_telemetry_opt_out(ctx: ActionContext) -> None:
    target = ctx.output(APP_HOME.name) / CHROMA_TELEMETRY
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(TELEMETRY_OPT_OUT_ID, encoding="utf-8")


def _install_bundled_runtime(ctx: ActionContext) -> None:
    work = ctx.scratch / "runtime"
    work.mkdir()
    ctx.toolchain.runtime.install(
        work, accelerator=ctx.descriptor.accelerator_enabled, timeout=ctx.timeout
    )
    shutil.copytree(work, ctx.output(BUNDLED_RUNTIME.name), symlinks=True, dirs_exist_ok=True)


def _prefetch(ctx: ActionContext, kinds: tuple[ModelKind, ...], cache: Path) -> None:
    # Fetch into scratch so a retried attempt never sees a half-written model.
    work = ctx.scratch / "models"
    work.mkdir()
    for model in ctx.descriptor.prefetch_of(*kinds):
        ctx.toolchain.fetcher.fetch(model, work, timeout=ctx.timeout)
    shutil.copytree(work, ctx.output(BACKEND_RUNTIME.name) / cache, dirs_exist_ok=True)


def _prefetch_embedding(ctx: ActionContext) -> None:
    _prefetch(
        ctx,
        (ModelKind.EMBEDDING, ModelKind.RERANKING, ModelKind.AUXILIARY_EMBEDDING),
        EMBEDDING_CACHE,
    )


def _prefetch_whisper(ctx: ActionContext) -> None:
    _prefetch(ctx, (ModelKind.WHISPER,), WHISPER_CACHE)


def _prefetch_tiktoken(ctx: ActionContext) -> None:
    _prefetch(ctx, (ModelKind.TIKTOKEN,), TIKTOKEN_CACHE)


def _stamp_build_info(ctx: ActionContext) -> None:
    info = {
        "build_identifier": ctx.descriptor.build_identifier,
        "upstream": {
            name: digest
            for name, digest in sorted(ctx.input_digests.items())
            if name != BACKEND_SOURCE.name
        },
    }
    (ctx.output(BACKEND_RUNTIME.name) / BUILD_INFO_FILE).write_text(
        json.dumps(info, indent=2, sort_keys=True) + "\n", encoding="utf-8"
    )


# Minimal footprint clears model_prefetch, but every prefetch action also
# requires minimal_footprint=False so the rule holds on its own.
_PREFETCH = when("model_prefetch", minimal_footprint=False)

RUNTIME_ASSEMBLY = StageDefinition(
    name=STAGE_NAME,
    display_name="Runtime Assembly",
    inputs=(BACKEND_SOURCE, FRONTEND_BUNDLE, PYTHON_PACKAGES),
    outputs=(BACKEND_RUNTIME, APP_HOME, BUNDLED_RUNTIME),
    actions_version="1",
    actions=(
        ProvisioningAction(
            name="copy-backend-files",
            effect=_copy_backend,
            description="Copy backend runtime files.",
        ),
        ProvisioningAction(
            name="create-cache-layout",
            effect=_create_cache_layout,
            description="Create model and vector-store cache directories.",
        ),
        ProvisioningAction(
            name="seed-telemetry-opt-out",
            effect=_seed_telemetry_opt_out,
            description="Write the anonymous vector-store telemetry id.",
        ),
        ProvisioningAction(
            name="install-bundled-runtime",
            effect=_install_bundled_runtime,
            condition=when(bundled_runtime_enabled=True),
            uses=frozenset({"accelerator_enabled"}),
            fetches=True,
            description="Install the bundled local inference runtime.",
        ),
        ProvisioningAction(
            name="prefetch-embedding-models",
            effect=_prefetch_embedding,
            condition=_PREFETCH,
            uses=frozenset({"model_prefetch"}),
            fetches=True,
            prefetch=True,
            description="Download embedding, reranking and auxiliary models.",
        ),
        ProvisioningAction(
            name="prefetch-whisper-model",
            effect=_prefetch_whisper,
            condition=_PREFETCH,
            uses=frozenset({"model_prefetch"}),
            fetches=True,
            prefetch=True,
            description="Download the speech-to-text model.",
        ),
        ProvisioningAction(
            name="prefetch-tiktoken-encoding",
            effect=_prefetch_tiktoken,
            condition=_PREFETCH,
            uses=frozenset({"model_prefetch"}),
            fetches=True,
            prefetch=True,
            description="Download the tokenizer encoding.",
        ),
        ProvisioningAction(
            name="stamp-build-info",
            effect=_stamp_build_info,
            uses=frozenset({"build_identifier"}),
            description="Record the build identifier and upstream digests.",
        ),
    ),
)


def runtime_environment(descriptor) -> dict[str, str]:
    """Model and feature settings exported into the runtime environment."""
    root = "/" + str(BACKEND_RUNTIME.install_path)
    env = {
        "PYTHONUNBUFFERED": "1",
        "ENV": "prod",
        "DOCKER": "true",
        "WHISPER_MODEL": descriptor.whisper_model,
        "WHISPER_MODEL_DIR": f"{root}/{WHISPER_CACHE}",
        "SENTENCE_TRANSFORMERS_HOME": f"{root}/{EMBEDDING_CACHE}",
        "HF_HOME": f"{root}/{EMBEDDING_CACHE}",
        "RAG_EMBEDDING_MODEL": descriptor.embedding_model,
        "RAG_RERANKING_MODEL": descriptor.reranking_model,
        "AUXILIARY_EMBEDDING_MODEL": descriptor.auxiliary_embedding_model,
        "TIKTOKEN_ENCODING_NAME": descriptor.tiktoken_encoding,
        "TIKTOKEN_CACHE_DIR": f"{root}/{TIKTOKEN_CACHE}",
        "USE_CUDA_DOCKER": str(descriptor.accelerator_enabled).lower(),
        "USE_OLLAMA_DOCKER": str(descriptor.bundled_runtime_enabled).lower(),
        "USE_SLIM_DOCKER": str(descriptor.minimal_footprint).lower(),
    }
    if descriptor.accelerator_enabled:
        env["USE_CUDA_DOCKER_VER"] = descriptor.accelerator_variant or ""
    return env
