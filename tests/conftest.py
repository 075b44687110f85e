"""Shared test fixtures for Layerforge."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from layerforge.config import Settings
from layerforge.core.artifact_cache import ArtifactCache
from layerforge.core.normalizer import IdentityNormalizer
from layerforge.core.orchestrator import Orchestrator
from layerforge.core.stage_graph import StageGraph
from layerforge.models.variant import ModelPrefetch
from layerforge.stages import DEFAULT_STAGE_DEFINITIONS
from layerforge.toolchain import Toolchain

# ---------------------------------------------------------------------------
# Fake collaborators: offline stand-ins for the Protocols
# ---------------------------------------------------------------------------


class FakeBundler:
    """Writes a one-file bundle stamped with the build identifier."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.installs: list[list[str]] = []
        self.builds: list[str] = []

    def install(self, workdir: Path, *, timeout: float | None = None) -> None:
        self.installs.append(sorted(p.name for p in workdir.iterdir()))

    def build(
        self,
        workdir: Path,
        build_identifier: str,
        dest: Path,
        *,
        timeout: float | None = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("bundler exploded")
        self.builds.append(build_identifier)
        dest.mkdir(parents=True, exist_ok=True)
        app = (workdir / "src" / "app.js").read_text(encoding="utf-8")
        (dest / "index.html").write_text(f"<!-- {build_identifier} -->\n{app}", encoding="utf-8")


class FakeInstaller:
    """Records every install and drops a marker file per package or manifest."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def install(
        self,
        dest: Path,
        *,
        manifest: Path | None = None,
        packages=(),
        index_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.calls.append({"manifest": manifest, "packages": tuple(packages), "index_url": index_url})
        dest.mkdir(parents=True, exist_ok=True)
        for pkg in packages:
            (dest / f"{pkg}.dist-info").write_text(index_url or "", encoding="utf-8")
        if manifest is not None:
            for line in manifest.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    (dest / f"{line.strip()}.dist-info").write_text("pypi", encoding="utf-8")


class FakeFetcher:
    """Writes one file per model; can fail the first *transient_failures* calls."""

    def __init__(self, transient_failures: int = 0) -> None:
        self.transient_failures = transient_failures
        self.fetched: list[ModelPrefetch] = []

    def fetch(self, model: ModelPrefetch, dest: Path, *, timeout: float | None = None) -> None:
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise httpx.ConnectTimeout("simulated timeout")
        self.fetched.append(model)
        (dest / f"{model.kind.value}--{model.name.replace('/', '--')}").write_text(
            model.name, encoding="utf-8"
        )


class FakeRuntime:
    """Installs an executable stub binary."""

    def __init__(self) -> None:
        self.installs: list[bool] = []

    def install(self, dest: Path, *, accelerator: bool = False, timeout: float | None = None) -> None:
        self.installs.append(accelerator)
        binary = dest / "bin" / "ollama"
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_text("#!/bin/sh\necho ollama\n", encoding="utf-8")
        binary.chmod(0o755)


@pytest.fixture
def fake_toolchain() -> Toolchain:
    """Provide a Toolchain of fresh fake collaborators."""
    return Toolchain(
        bundler=FakeBundler(),
        installer=FakeInstaller(),
        fetcher=FakeFetcher(),
        runtime=FakeRuntime(),
    )


# ---------------------------------------------------------------------------
# Sources, settings and components
# ---------------------------------------------------------------------------


@pytest.fixture
def sources(tmp_path: Path) -> dict[str, Path]:
    """Provide the three source inputs a build needs."""
    frontend = tmp_path / "src" / "frontend"
    (frontend / "src").mkdir(parents=True)
    (frontend / "src" / "app.js").write_text("console.log('hi');\n", encoding="utf-8")
    (frontend / "package.json").write_text(json.dumps({"name": "ui", "version": "1.2.3"}), encoding="utf-8")
    (frontend / "CHANGELOG.md").write_text("# Changelog\n", encoding="utf-8")
    (frontend / "node_modules" / "junk").mkdir(parents=True)

    manifest = tmp_path / "src" / "requirements.txt"
    manifest.write_text("fastapi\nuvicorn\n", encoding="utf-8")

    backend = tmp_path / "src" / "backend"
    (backend / "open_webui").mkdir(parents=True)
    (backend / "open_webui" / "main.py").write_text("app = None\n", encoding="utf-8")
    start = backend / "start.sh"
    start.write_text("#!/bin/bash\nexec uvicorn open_webui.main:app\n", encoding="utf-8")
    start.chmod(0o755)

    return {"frontend-src": frontend, "backend-manifest": manifest, "backend-src": backend}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Provide Settings rooted in a temp directory, ignoring any .env file."""
    return Settings(
        _env_file=None,
        cache_path=tmp_path / "cache",
        work_path=tmp_path / "work",
        output_path=tmp_path / "images",
        retry_backoff_seconds=0.0,
        fetch_timeout_seconds=5.0,
    )


@pytest.fixture
def chown_calls() -> list[tuple[str, int, int]]:
    return []


@pytest.fixture
def recording_normalizer(chown_calls: list[tuple[str, int, int]]) -> IdentityNormalizer:
    """An IdentityNormalizer that records ownership changes instead of applying them."""
    return IdentityNormalizer(chown=lambda path, uid, gid: chown_calls.append((str(path), uid, gid)))


@pytest.fixture
def make_orchestrator(
    settings: Settings,
    fake_toolchain: Toolchain,
    recording_normalizer: IdentityNormalizer,
) -> Callable[..., Orchestrator]:
    """Factory fixture: an Orchestrator wired to temp paths and fake collaborators."""

    def _factory(**overrides: Any) -> Orchestrator:
        kwargs: dict[str, Any] = {
            "toolchain": fake_toolchain,
            "normalizer": recording_normalizer,
        }
        kwargs.update(overrides)
        return Orchestrator(settings, **kwargs)

    return _factory


@pytest.fixture
def cache(tmp_path: Path) -> ArtifactCache:
    """Provide a fresh ArtifactCache in a temp directory."""
    return ArtifactCache(tmp_path / "cache")


@pytest.fixture
def graph() -> StageGraph:
    """Provide a StageGraph with the default build stages."""
    return StageGraph(DEFAULT_STAGE_DEFINITIONS)


@pytest.fixture
def own_identity() -> dict[str, str]:
    """Flags that make the normalizer chown to the test process's own identity."""
    return {"UID": str(os.getuid()), "GID": str(os.getgid())}
