"""Protocols for the external collaborators a build invokes.

The orchestrator never knows how a frontend is bundled, how packages are
installed or where model weights come from.  Stage actions talk to these
Protocols only; ``layerforge.toolchain.defaults`` provides real backends and
tests inject fakes.

Any object with matching methods satisfies a Protocol; no subclassing
required.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from layerforge.models.variant import ModelPrefetch


@runtime_checkable
class AssetBundler(Protocol):
    """Turns a frontend source tree into a static asset bundle."""

    def install(self, workdir: Path, *, timeout: float | None = None) -> None:
        """Install the frontend's own dependencies inside *workdir*."""
        ...

    def build(
        self,
        workdir: Path,
        build_identifier: str,
        dest: Path,
        *,
        timeout: float | None = None,
    ) -> None:
        """Build *workdir* and place the static bundle at *dest*."""
        ...


@runtime_checkable
class DependencyInstaller(Protocol):
    """Installs a dependency set into a self-contained target directory."""

    def install(
        self,
        dest: Path,
        *,
        manifest: Path | None = None,
        packages: Sequence[str] = (),
        index_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        ...


@runtime_checkable
class ModelFetcher(Protocol):
    """Downloads one model artifact into *dest*."""

    def fetch(self, model: ModelPrefetch, dest: Path, *, timeout: float | None = None) -> None:
        ...


@runtime_checkable
class RuntimeInstaller(Protocol):
    """Installs the optional bundled inference runtime into *dest*."""

    def install(
        self,
        dest: Path,
        *,
        accelerator: bool = False,
        timeout: float | None = None,
    ) -> None:
        ...


@dataclass(frozen=True)
class Toolchain:
    """The set of collaborators handed to every action context."""

    bundler: AssetBundler
    installer: DependencyInstaller
    fetcher: ModelFetcher
    runtime: RuntimeInstaller
