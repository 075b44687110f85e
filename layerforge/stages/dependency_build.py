"""Dependency build: backend manifest to an installed dependency set.

The install location inside the final tree is this stage's declared
contract (``PYTHON_PACKAGES.install_path``); consumers derive PATH and
PYTHONPATH from it instead of assuming a fixed user-site layout.
"""

from __future__ import annotations

from pathlib import Path

from layerforge.models.actions import ActionContext, ProvisioningAction, when
from layerforge.models.artifacts import output, source
from layerforge.models.stages import StageDefinition
from layerforge.toolchain.defaults import ACCELERATOR_INDEX, CPU_INDEX

STAGE_NAME = "dependency-build"

PYTHON_SITE = "home/app/.local/lib/python3.11/site-packages"

BACKEND_MANIFEST = source("backend-manifest")
PYTHON_PACKAGES = output("python-packages", STAGE_NAME, PYTHON_SITE)

FRAMEWORK_PACKAGES: tuple[str, ...] = ("torch", "torchvision", "torchaudio")


def _manifest_file(ctx: ActionContext) -> Path:
    path = ctx.input_path(BACKEND_MANIFEST.name)
    return path / "requirements.txt" if path.is_dir() else path


def _install_accelerator_framework(ctx: ActionContext) -> None:
    ctx.toolchain.installer.install(
        ctx.output(PYTHON_PACKAGES.name),
        packages=FRAMEWORK_PACKAGES,
        index_url=ACCELERATOR_INDEX.format(variant=ctx.descriptor.accelerator_variant),
        timeout=ctx.timeout,
    )


def _install_cpu_framework(ctx: ActionContext) -> None:
    ctx.toolchain.installer.install(
        ctx.output(PYTHON_PACKAGES.name),
        packages=FRAMEWORK_PACKAGES,
        index_url=CPU_INDEX,
        timeout=ctx.timeout,
    )


def _install_requirements(ctx: ActionContext) -> None:
    ctx.toolchain.installer.install(
        ctx.output(PYTHON_PACKAGES.name),
        manifest=_manifest_file(ctx),
        timeout=ctx.timeout,
    )


DEPENDENCY_BUILD = StageDefinition(
    name=STAGE_NAME,
    display_name="Dependency Build",
    inputs=(BACKEND_MANIFEST,),
    outputs=(PYTHON_PACKAGES,),
    actions_version="1",
    actions=(
        ProvisioningAction(
            name="install-accelerator-framework",
            effect=_install_accelerator_framework,
            condition=when(accelerator_enabled=True),
            uses=frozenset({"accelerator_variant"}),
            fetches=True,
            description="Install framework wheels from the accelerator index.",
        ),
        ProvisioningAction(
            name="install-cpu-framework",
            effect=_install_cpu_framework,
            condition=when(accelerator_enabled=False),
            fetches=True,
            description="Install CPU-only framework wheels.",
        ),
        ProvisioningAction(
            name="install-backend-requirements",
            effect=_install_requirements,
            fetches=True,
            description="Install the backend's declared dependency manifest.",
        ),
    ),
)
