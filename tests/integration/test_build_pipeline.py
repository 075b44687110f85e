"""End-to-end build tests: resolve, stage graph, cache, compose, normalize.

These exercise the Orchestrator, ProvisioningExecutor, ArtifactCache,
ImageComposer and IdentityNormalizer together against fake collaborators.
"""

from __future__ import annotations

import json
import stat
import threading
import time
from pathlib import Path

import pytest

from layerforge.core.artifact_cache import ArtifactCache
from layerforge.core.normalizer import IdentityNormalizer
from layerforge.core.orchestrator import Orchestrator
from layerforge.models import RunStatus, StageStatus
from layerforge.toolchain import Toolchain

SLIM_UNHARDENED = {
    "USE_CUDA": "false",
    "USE_OLLAMA": "false",
    "USE_SLIM": "true",
    "USE_PERMISSION_HARDENING": "false",
}

FULL = {
    "USE_CUDA": "true",
    "USE_OLLAMA": "true",
    "USE_SLIM": "false",
    "USE_PERMISSION_HARDENING": "false",
    "BUILD_HASH": "abc123",
}

PREFETCH_ACTIONS = {
    "prefetch-embedding-models",
    "prefetch-whisper-model",
    "prefetch-tiktoken-encoding",
}


class TestSlimBuild:
    def test_succeeds_without_prefetch(self, make_orchestrator, sources, chown_calls):
        result = make_orchestrator().build(SLIM_UNHARDENED, sources)

        assert result.status == RunStatus.SUCCEEDED
        assert result.failure is None
        runtime = result.stage_runs["runtime-assembly"]
        assert not PREFETCH_ACTIONS & set(runtime.executed_actions)
        assert "install-bundled-runtime" not in runtime.executed_actions
        assert chown_calls
        assert {(uid, gid) for _, uid, gid in chown_calls} == {(1001, 0)}

    def test_composed_layout(self, make_orchestrator, sources, settings):
        result = make_orchestrator().build({**SLIM_UNHARDENED, "BUILD_HASH": "b42"}, sources)

        root = result.artifact.root
        assert root == settings.output_path / "b42"
        assert (root / "app" / "build" / "index.html").is_file()
        assert (root / "app" / "package.json").is_file()
        assert (root / "app" / "backend" / "open_webui" / "main.py").is_file()
        assert (root / "app" / "backend" / "start.sh").is_file()
        site = root / "home" / "app" / ".local" / "lib" / "python3.11" / "site-packages"
        assert (site / "fastapi.dist-info").is_file()
        assert (root / "home" / "app" / ".cache" / "chroma" / "telemetry_user_id").is_file()
        assert not (root / "usr" / "local" / "bin" / "ollama").exists()
        assert not list(settings.output_path.glob(".compose-*"))

    def test_image_config_manifest(self, make_orchestrator, sources):
        result = make_orchestrator().build({**SLIM_UNHARDENED, "BUILD_HASH": "b42"}, sources)

        artifact = result.artifact
        assert artifact.version == "1.2.3+b42"
        assert artifact.user == "1001:0"
        assert artifact.environment["USE_SLIM_DOCKER"] == "true"
        assert artifact.environment["WEBUI_BUILD_VERSION"] == "b42"
        manifest = json.loads(artifact.manifest_path.read_text(encoding="utf-8"))
        assert manifest["build_identifier"] == "b42"
        assert manifest["entrypoint"] == ["bash", "start.sh"]
        assert manifest["exposed_port"] == 8080
        assert set(manifest["stage_digests"]) == {
            "asset-build", "dependency-build", "runtime-assembly",
        }
        assert "root" not in manifest


class TestFullBuild:
    def test_runs_every_conditional_action(self, make_orchestrator, sources, fake_toolchain):
        result = make_orchestrator().build(FULL, sources)

        assert result.succeeded
        deps = result.stage_runs["dependency-build"].executed_actions
        assert "install-accelerator-framework" in deps
        assert "install-cpu-framework" not in deps
        runtime = result.stage_runs["runtime-assembly"].executed_actions
        assert PREFETCH_ACTIONS <= set(runtime)
        assert "install-bundled-runtime" in runtime
        assert fake_toolchain.runtime.installs == [True]

        root = result.artifact.root
        assert (root / "usr" / "local" / "bin" / "ollama").is_file()
        whisper = root / "app" / "backend" / "data" / "cache" / "whisper" / "models"
        assert any(whisper.iterdir())
        assert result.artifact.environment["USE_CUDA_DOCKER"] == "true"

    def test_transient_fetch_failures_are_retried(self, make_orchestrator, sources, fake_toolchain):
        fake_toolchain.fetcher.transient_failures = 2

        result = make_orchestrator().build(FULL, sources)

        assert result.succeeded
        assert fake_toolchain.fetcher.fetched


class TestFailureIsolation:
    def test_failed_stage_skips_dependents(self, make_orchestrator, sources, fake_toolchain):
        fake_toolchain.bundler.fail = True
        orch = make_orchestrator()

        result = orch.build(SLIM_UNHARDENED, sources)

        assert result.status == RunStatus.FAILED
        assert result.artifact is None
        assert result.failure.stage == "asset-build"
        assert result.failure.action == "build-static-bundle"
        assert "bundler exploded" in result.failure.cause
        statuses = result.statuses()
        assert statuses["asset-build"] == StageStatus.FAILED
        assert statuses["dependency-build"] == StageStatus.SUCCEEDED
        assert statuses["runtime-assembly"] == StageStatus.SKIPPED

    def test_independent_stage_is_still_cached(self, make_orchestrator, sources, fake_toolchain):
        fake_toolchain.bundler.fail = True
        orch = make_orchestrator()

        result = orch.build(SLIM_UNHARDENED, sources)

        deps = result.stage_runs["dependency-build"]
        assert orch.cache.exists("dependency-build", deps.cache_key)

    def test_no_final_tree_on_failure(self, make_orchestrator, sources, settings, fake_toolchain):
        fake_toolchain.bundler.fail = True
        orch = make_orchestrator()

        orch.build({**SLIM_UNHARDENED, "BUILD_HASH": "broken"}, sources)

        assert not (settings.output_path / "broken").exists()

    def test_missing_source_fails_consumer(self, make_orchestrator, sources):
        del sources["backend-manifest"]

        result = make_orchestrator().build(SLIM_UNHARDENED, sources)

        assert not result.succeeded
        assert result.failure.stage == "dependency-build"
        assert result.failure.action == "<inputs>"
        assert result.statuses()["runtime-assembly"] == StageStatus.SKIPPED


class TestCaching:
    def test_second_run_is_fully_cached(self, make_orchestrator, sources):
        orch = make_orchestrator()
        first = orch.build(SLIM_UNHARDENED, sources)
        second = orch.build(SLIM_UNHARDENED, sources)

        assert first.actions_executed > 0
        assert second.succeeded
        assert second.actions_executed == 0
        assert set(second.statuses().values()) == {StageStatus.CACHED}
        assert second.artifact.stage_digests == first.artifact.stage_digests

    def test_build_identifier_only_reruns_runtime_assembly(self, make_orchestrator, sources):
        orch = make_orchestrator()
        orch.build({**SLIM_UNHARDENED, "BUILD_HASH": "one"}, sources)
        second = orch.build({**SLIM_UNHARDENED, "BUILD_HASH": "two"}, sources)

        statuses = second.statuses()
        assert statuses["asset-build"] == StageStatus.CACHED
        assert statuses["dependency-build"] == StageStatus.CACHED
        assert statuses["runtime-assembly"] == StageStatus.SUCCEEDED

    def test_source_change_invalidates_consumers(self, make_orchestrator, sources):
        orch = make_orchestrator()
        orch.build(SLIM_UNHARDENED, sources)
        (sources["frontend-src"] / "src" / "app.js").write_text("console.log('bye');\n", encoding="utf-8")

        statuses = orch.build(SLIM_UNHARDENED, sources).statuses()

        assert statuses["asset-build"] == StageStatus.SUCCEEDED
        assert statuses["dependency-build"] == StageStatus.CACHED
        assert statuses["runtime-assembly"] == StageStatus.SUCCEEDED

    def test_ignored_source_files_do_not_invalidate(self, make_orchestrator, sources):
        orch = make_orchestrator()
        orch.build(SLIM_UNHARDENED, sources)
        (sources["frontend-src"] / "node_modules" / "junk" / "x.js").write_text("1", encoding="utf-8")

        second = orch.build(SLIM_UNHARDENED, sources)

        assert second.actions_executed == 0

    def test_force_rebuild_is_reproducible(self, make_orchestrator, sources):
        orch = make_orchestrator()
        first = orch.build(SLIM_UNHARDENED, sources)
        forced = orch.build(SLIM_UNHARDENED, sources, force=True)

        assert forced.succeeded
        assert set(forced.statuses().values()) == {StageStatus.SUCCEEDED}
        assert forced.artifact.stage_digests == first.artifact.stage_digests

    def test_bundler_never_sees_excluded_files(self, make_orchestrator, sources, fake_toolchain):
        make_orchestrator().build(SLIM_UNHARDENED, sources)

        assert fake_toolchain.bundler.installs == [["CHANGELOG.md", "package.json", "src"]]


class TestHardening:
    def test_group_bits_on_composed_tree(self, make_orchestrator, sources, own_identity):
        orch = make_orchestrator(normalizer=IdentityNormalizer())
        flags = {**SLIM_UNHARDENED, **own_identity, "USE_PERMISSION_HARDENING": "true"}

        result = orch.build(flags, sources)

        assert result.succeeded
        root = result.artifact.root
        start = (root / "app" / "backend" / "start.sh").stat().st_mode
        assert start & stat.S_IRGRP and start & stat.S_IWGRP and start & stat.S_IXGRP
        main = (root / "app" / "backend" / "open_webui" / "main.py").stat().st_mode
        assert main & stat.S_IWGRP
        assert not main & stat.S_IXGRP
        backend = (root / "app" / "backend").stat().st_mode
        assert backend & stat.S_IXGRP

    def test_normalization_failure_fails_the_run(self, make_orchestrator, sources, settings):
        def refuse(path, uid, gid):
            raise PermissionError("not permitted")

        orch = make_orchestrator(normalizer=IdentityNormalizer(chown=refuse))

        result = orch.build({**SLIM_UNHARDENED, "BUILD_HASH": "denied"}, sources)

        assert not result.succeeded
        assert result.failure.stage == "<normalize>"
        assert not (settings.output_path / "denied").exists()
        assert not list(settings.output_path.glob(".compose-*"))


@pytest.mark.parametrize("workers", [1, 4])
def test_worker_count_does_not_change_outputs(settings, sources, fake_toolchain, workers):
    orch = Orchestrator(
        settings.model_copy(update={"max_workers": workers}),
        toolchain=fake_toolchain,
        normalizer=IdentityNormalizer(chown=lambda *_: None),
    )

    result = orch.build(SLIM_UNHARDENED, sources)

    assert result.succeeded
    assert result.stage_runs["runtime-assembly"].executed_actions[0] == "copy-backend-files"


class _GatedBundler:
    """Delegates to *inner* once *gate* opens; fails instead of hanging."""

    def __init__(self, inner, gate: threading.Event) -> None:
        self.inner = inner
        self.gate = gate

    def install(self, workdir, *, timeout=None):
        if not self.gate.wait(5.0):
            raise RuntimeError("dependency-build did not run alongside asset-build")
        self.inner.install(workdir, timeout=timeout)

    def build(self, workdir, build_identifier, dest, *, timeout=None):
        self.inner.build(workdir, build_identifier, dest, timeout=timeout)


class _SignallingInstaller:
    """Opens *gate* on every install, then waits *linger* seconds before delegating."""

    def __init__(self, inner, gate: threading.Event, linger: float = 0.0) -> None:
        self.inner = inner
        self.gate = gate
        self.linger = linger

    def install(self, dest, **kwargs):
        self.gate.set()
        time.sleep(self.linger)
        self.inner.install(dest, **kwargs)


class _WaitingInstaller:
    """Waits for *gate*, then lingers so a sibling failure lands first."""

    def __init__(self, inner, gate: threading.Event, linger: float) -> None:
        self.inner = inner
        self.gate = gate
        self.linger = linger

    def install(self, dest, **kwargs):
        self.gate.wait(5.0)
        time.sleep(self.linger)
        self.inner.install(dest, **kwargs)


class _FailingBundler:
    def __init__(self, failed: threading.Event) -> None:
        self.failed = failed

    def install(self, workdir, *, timeout=None):
        pass

    def build(self, workdir, build_identifier, dest, *, timeout=None):
        self.failed.set()
        raise RuntimeError("bundler exploded")


class TestConcurrency:
    def test_independent_stages_run_at_the_same_time(self, make_orchestrator, sources, fake_toolchain):
        gate = threading.Event()
        toolchain = Toolchain(
            bundler=_GatedBundler(fake_toolchain.bundler, gate),
            installer=_SignallingInstaller(fake_toolchain.installer, gate),
            fetcher=fake_toolchain.fetcher,
            runtime=fake_toolchain.runtime,
        )

        result = make_orchestrator(toolchain=toolchain).build(SLIM_UNHARDENED, sources)

        assert result.succeeded, result.failure

    def test_in_flight_sibling_finishes_and_is_cached(self, make_orchestrator, sources, fake_toolchain):
        failed = threading.Event()
        toolchain = Toolchain(
            bundler=_FailingBundler(failed),
            installer=_WaitingInstaller(fake_toolchain.installer, failed, linger=0.3),
            fetcher=fake_toolchain.fetcher,
            runtime=fake_toolchain.runtime,
        )
        orch = make_orchestrator(toolchain=toolchain)

        result = orch.build(SLIM_UNHARDENED, sources)

        assert result.failure.stage == "asset-build"
        asset = result.stage_runs["asset-build"]
        deps = result.stage_runs["dependency-build"]
        assert asset.status == StageStatus.FAILED
        assert deps.status == StageStatus.SUCCEEDED
        assert asset.finished_at < deps.finished_at
        assert orch.cache.exists("dependency-build", deps.cache_key)
        assert result.stage_runs["runtime-assembly"].status == StageStatus.SKIPPED


class _ExplodingCache(ArtifactCache):
    def lookup(self, stage, key):
        if stage == "dependency-build":
            raise RuntimeError("cache backend went away")
        return super().lookup(stage, key)


class TestCacheCorruption:
    def test_nul_pointer_rebuilds_stage(self, make_orchestrator, sources):
        orch = make_orchestrator()
        first = orch.build(SLIM_UNHARDENED, sources)
        key = first.stage_runs["dependency-build"].cache_key
        (orch.cache.root / "dependency-build" / key[:2] / key / "CURRENT").write_bytes(b"\x00" * 32)

        second = orch.build(SLIM_UNHARDENED, sources)

        assert second.succeeded
        statuses = second.statuses()
        assert statuses["asset-build"] == StageStatus.CACHED
        assert statuses["dependency-build"] == StageStatus.SUCCEEDED
        assert orch.cache.exists("dependency-build", key)

    def test_undecodable_metadata_rebuilds_stage(self, make_orchestrator, sources):
        orch = make_orchestrator()
        first = orch.build(SLIM_UNHARDENED, sources)
        entry = first.stage_runs["asset-build"].artifact
        (entry.path.parent / "entry.json").write_bytes(b"\xff\xfe garbage")

        second = orch.build(SLIM_UNHARDENED, sources)

        assert second.succeeded
        assert second.statuses()["asset-build"] == StageStatus.SUCCEEDED

    def test_unexpected_worker_error_is_reported(self, make_orchestrator, sources, settings):
        orch = make_orchestrator(cache=_ExplodingCache(settings.cache_path))

        result = orch.build(SLIM_UNHARDENED, sources)

        assert result.status == RunStatus.FAILED
        assert result.artifact is None
        assert result.failure.stage == "dependency-build"
        assert result.failure.action == "<stage>"
        assert "cache backend went away" in result.failure.cause
        assert result.statuses()["runtime-assembly"] == StageStatus.SKIPPED
