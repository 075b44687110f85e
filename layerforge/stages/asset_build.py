"""Asset build: frontend source tree to static asset bundle.

No upstream stage.  The bundler is handed a build identifier derived from
the source fingerprint rather than the variant's ``build_identifier``, so
this stage's cache entry is shared by every build of the same source.
"""

from __future__ import annotations

import shutil

from layerforge.core.hasher import DEFAULT_EXCLUDES
from layerforge.models.actions import ActionContext, ProvisioningAction
from layerforge.models.artifacts import output, source
from layerforge.models.stages import StageDefinition

STAGE_NAME = "asset-build"

FRONTEND_SOURCE = source("frontend-src")
FRONTEND_BUNDLE = output("frontend-bundle", STAGE_NAME, "app")

RELEASE_METADATA_FILES: tuple[str, ...] = ("package.json", "CHANGELOG.md")


def asset_build_identifier(source_digest: str) -> str:
    """Deterministic bundler build identifier for a source fingerprint."""
    return "src-" + source_digest.removeprefix("sha256:")[:12]


def _prepare_workspace(ctx: ActionContext) -> None:
    shutil.copytree(
        ctx.input_path(FRONTEND_SOURCE.name),
        ctx.workspace / "src",
        symlinks=True,
        ignore=shutil.ignore_patterns(*DEFAULT_EXCLUDES),
    )


def _install_dependencies(ctx: ActionContext) -> None:
    ctx.toolchain.bundler.install(ctx.workspace / "src", timeout=ctx.timeout)


def _build_bundle(ctx: ActionContext) -> None:
    ctx.toolchain.bundler.build(
        ctx.workspace / "src",
        asset_build_identifier(ctx.input_digests[FRONTEND_SOURCE.name]),
        ctx.output(FRONTEND_BUNDLE.name) / "build",
        timeout=ctx.timeout,
    )


def _collect_release_metadata(ctx: ActionContext) -> None:
    dest = ctx.output(FRONTEND_BUNDLE.name)
    for name in RELEASE_METADATA_FILES:
        candidate = ctx.workspace / "src" / name
        if candidate.is_file():
            shutil.copy2(candidate, dest / name)


ASSET_BUILD = StageDefinition(
    name=STAGE_NAME,
    display_name="Asset Build",
    inputs=(FRONTEND_SOURCE,),
    outputs=(FRONTEND_BUNDLE,),
    actions_version="1",
    actions=(
        ProvisioningAction(
            name="prepare-frontend-workspace",
            effect=_prepare_workspace,
            description="Copy the frontend source into the stage workspace.",
        ),
        ProvisioningAction(
            name="install-frontend-dependencies",
            effect=_install_dependencies,
            fetches=True,
            description="Install the frontend's locked dependencies.",
        ),
        ProvisioningAction(
            name="build-static-bundle",
            effect=_build_bundle,
            description="Produce the static asset bundle.",
        ),
        ProvisioningAction(
            name="collect-release-metadata",
            effect=_collect_release_metadata,
            description="Ship package.json and CHANGELOG.md beside the bundle.",
        ),
    ),
)
