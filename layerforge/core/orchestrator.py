"""Build orchestrator: the central coordinator for Layerforge builds.

The Orchestrator wires together the resolver, StageGraph, ArtifactCache,
ProvisioningExecutor, ImageComposer and IdentityNormalizer into a single
build::

    resolve flags -> descriptor
        -> dispatch ready stages to a worker pool
               (cache lookup -> execute on miss -> cache store)
        -> compose -> normalize -> promote

Stage workers only touch their own ``StageRun``.  The scheduling thread
owns every other piece of run state and decides readiness from the stage
trees it has collected, so a dependent never starts before its upstream
trees are registered.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from layerforge.config import Settings
from layerforge.core.artifact_cache import ArtifactCache
from layerforge.core.composer import CompositionError, ImageComposer
from layerforge.core.executor import INPUTS_ACTION, ProvisioningError, ProvisioningExecutor
from layerforge.core.hasher import DEFAULT_EXCLUDES, compute_cache_key, fingerprint_tree
from layerforge.core.normalizer import IdentityNormalizer, NormalizationError
from layerforge.core.resolver import resolve
from layerforge.core.stage_graph import StageGraph
from layerforge.models.actions import ProvisioningAction
from layerforge.models.artifacts import ArtifactKind, ArtifactRef, source
from layerforge.models.image import FinalArtifact
from layerforge.models.reports import RunResult, RunStatus
from layerforge.models.stages import StageDefinition, StageFailure, StageRun, StageStatus
from layerforge.models.variant import VariantDescriptor
from layerforge.stages import DEFAULT_STAGE_DEFINITIONS
from layerforge.toolchain import Toolchain, default_toolchain

logger = logging.getLogger(__name__)

# Pseudo stage/action names for failures after every stage has finished.
COMPOSE_STAGE = "<compose>"
NORMALIZE_STAGE = "<normalize>"
# Action name for a worker error raised outside any provisioning action.
STAGE_ACTION = "<stage>"


def new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"lf-{ts}-{uuid.uuid4().hex[:6]}"


class Orchestrator:
    """Central build orchestrator.

    Parameters
    ----------
    settings:
        Infrastructure settings.  Uses defaults (and LAYERFORGE_* env) if
        not provided.
    toolchain:
        External collaborators.  Defaults to the production toolchain.
    stages:
        Stage definitions making up the build graph.
    cache, executor, composer, normalizer:
        Override the component built from *settings*.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        toolchain: Toolchain | None = None,
        stages: Iterable[StageDefinition] = DEFAULT_STAGE_DEFINITIONS,
        cache: ArtifactCache | None = None,
        executor: ProvisioningExecutor | None = None,
        composer: ImageComposer | None = None,
        normalizer: IdentityNormalizer | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.graph = StageGraph(stages)
        self.toolchain = toolchain or default_toolchain(
            model_endpoint=self.settings.model_endpoint,
            runtime_url=self.settings.runtime_install_url or None,
        )
        self.cache = cache or ArtifactCache(
            self.settings.cache_path, verify=self.settings.verify_cache
        )
        self.executor = executor or ProvisioningExecutor(
            self.settings.work_path,
            self.toolchain,
            fetch_timeout=self.settings.fetch_timeout_seconds,
            fetch_retries=self.settings.fetch_retries,
            retry_backoff=self.settings.retry_backoff_seconds,
        )
        self.composer = composer or ImageComposer(self.settings.output_path, self.graph)
        self.normalizer = normalizer or IdentityNormalizer()

    # ------------------------------------------------------------------
    # Static views
    # ------------------------------------------------------------------

    def plan(
        self, flags: Mapping[str, Any] | None = None
    ) -> tuple[VariantDescriptor, list[tuple[StageDefinition, list[tuple[ProvisioningAction, bool]]]]]:
        """Resolve *flags* and list every stage's actions with applicability."""
        descriptor = resolve(flags)
        return descriptor, [
            (stage, self.executor.plan(stage, descriptor)) for stage in self.graph.stages()
        ]

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        flags: Mapping[str, Any] | None,
        sources: Mapping[str, Path],
        *,
        force: bool = False,
    ) -> RunResult:
        """Run one build end to end.

        *sources* maps source artifact names (``frontend-src``,
        ``backend-manifest``, ``backend-src``) to paths.  With *force*,
        cache lookups are skipped; results are still stored.
        """
        run_id = new_run_id()
        started = datetime.now(timezone.utc)
        descriptor = resolve(flags)
        logger.info(
            "Run %s: accelerator=%s runtime=%s minimal=%s hardening=%s build=%s",
            run_id,
            descriptor.accelerator_enabled,
            descriptor.bundled_runtime_enabled,
            descriptor.minimal_footprint,
            descriptor.permission_hardening,
            descriptor.build_identifier,
        )

        runs = {name: StageRun(name=name) for name in self.graph.topological_order}
        source_refs = self._materialise_sources(sources)
        stage_trees, failure = self._run_stages(descriptor, source_refs, runs, force=force)

        result = RunResult(
            run_id=run_id,
            status=RunStatus.FAILED,
            descriptor=descriptor,
            stage_runs=runs,
            actions_executed=sum(len(run.executed_actions) for run in runs.values()),
            started_at=started,
        )
        if failure is None:
            failure, artifact = self._finish(stage_trees, descriptor)
            if artifact is not None:
                result.status = RunStatus.SUCCEEDED
                result.artifact = artifact
        result.failure = failure
        result.finished_at = datetime.now(timezone.utc)

        if result.succeeded:
            logger.info("Run %s succeeded: %s", run_id, result.artifact.root)
        else:
            logger.error(
                "Run %s failed at %s/%s: %s", run_id, failure.stage, failure.action, failure.cause
            )
        return result

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _run_stages(
        self,
        descriptor: VariantDescriptor,
        sources: Mapping[str, ArtifactRef],
        runs: dict[str, StageRun],
        *,
        force: bool,
    ) -> tuple[dict[str, ArtifactRef], StageFailure | None]:
        stage_trees: dict[str, ArtifactRef] = {}
        failure: StageFailure | None = None
        dispatched: set[str] = set()
        in_flight: dict[Future[ArtifactRef], str] = {}

        def ready() -> list[str]:
            return [
                name
                for name in self.graph.topological_order
                if name not in dispatched
                and all(p in stage_trees for p in self.graph.predecessors(name))
            ]

        with ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_workers), thread_name_prefix="layerforge-stage"
        ) as pool:
            while True:
                if failure is None:
                    for name in ready():
                        dispatched.add(name)
                        upstream = {p: stage_trees[p] for p in self.graph.predecessors(name)}
                        future = pool.submit(
                            self._run_stage,
                            self.graph.stage(name),
                            descriptor,
                            sources,
                            upstream,
                            runs[name],
                            force,
                        )
                        in_flight[future] = name
                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    run = runs[name]
                    try:
                        tree = future.result()
                    except ProvisioningError as exc:
                        stage_failure = StageFailure(
                            stage=exc.stage,
                            action=exc.action,
                            cause=str(exc.cause),
                            retryable=exc.retryable,
                        )
                    except Exception as exc:
                        logger.exception("Stage %s raised outside its actions", name)
                        stage_failure = StageFailure(
                            stage=name, action=STAGE_ACTION, cause=f"{type(exc).__name__}: {exc}"
                        )
                    else:
                        if run.status == StageStatus.RUNNING:
                            run.transition(StageStatus.SUCCEEDED)
                        run.artifact = tree
                        stage_trees[name] = tree
                        continue

                    self._fail_stage(name, runs, stage_failure)
                    failure = failure or stage_failure

        # Short-circuited: nothing left pending may run in this build.
        for run in runs.values():
            if run.status == StageStatus.PENDING:
                run.transition(StageStatus.SKIPPED)
        return stage_trees, failure

    def _fail_stage(self, name: str, runs: dict[str, StageRun], stage_failure: StageFailure) -> None:
        run = runs[name]
        if run.status == StageStatus.PENDING:
            run.transition(StageStatus.RUNNING)
        run.error = stage_failure
        run.transition(StageStatus.FAILED)
        skipped = self.graph.cascade_skip(name, runs)
        if skipped:
            logger.warning("Skipping %s after %s failed", ", ".join(skipped), name)

    def _run_stage(
        self,
        stage: StageDefinition,
        descriptor: VariantDescriptor,
        sources: Mapping[str, ArtifactRef],
        upstream: Mapping[str, ArtifactRef],
        run: StageRun,
        force: bool,
    ) -> ArtifactRef:
        """Worker body: resolve inputs, consult the cache, execute on a miss."""
        inputs: dict[str, ArtifactRef] = {}
        for ref in stage.source_inputs:
            if ref.name not in sources:
                raise ProvisioningError(
                    stage.name, INPUTS_ACTION, f"source {ref.name!r} was not supplied"
                )
            inputs[ref.name] = sources[ref.name]
        for ref in stage.stage_inputs:
            tree = upstream[ref.producer]
            inputs[ref.name] = ref.materialised(tree.path / ref.name, tree.digest)

        key = compute_cache_key(
            stage,
            descriptor,
            {ref.name: inputs[ref.name].digest for ref in stage.source_inputs},
            {ref.name: inputs[ref.name].digest for ref in stage.stage_inputs},
        )
        run.cache_key = key

        if not force:
            hit = self.cache.lookup(stage.name, key)
            if hit is not None:
                run.transition(StageStatus.CACHED)
                return hit

        run.transition(StageStatus.RUNNING)
        produced = self.executor.run(
            stage,
            descriptor,
            inputs,
            on_action=lambda _stage, action: run.executed_actions.append(action),
        )
        try:
            entry = self.cache.store(stage.name, key, produced.path)
        except OSError as exc:
            logger.warning("Could not cache %s/%s, using work tree: %s", stage.name, key[:12], exc)
            return produced
        shutil.rmtree(produced.path, ignore_errors=True)
        return produced.model_copy(update={"path": entry.path, "digest": entry.digest})

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def _finish(
        self, stage_trees: Mapping[str, ArtifactRef], descriptor: VariantDescriptor
    ) -> tuple[StageFailure | None, FinalArtifact | None]:
        """Compose, normalize and promote.  Returns ``(failure, artifact)``."""
        try:
            assembled = self.composer.assemble(stage_trees, descriptor)
        except CompositionError as exc:
            return StageFailure(stage=COMPOSE_STAGE, action="assemble", cause=str(exc)), None

        tree = ArtifactRef(
            name=descriptor.build_identifier,
            producer=COMPOSE_STAGE,
            kind=ArtifactKind.STAGE_OUTPUT,
            path=assembled.root,
        )
        try:
            self.normalizer.normalize(tree, descriptor)
        except NormalizationError as exc:
            self.composer.discard(assembled)
            return StageFailure(stage=NORMALIZE_STAGE, action="normalize", cause=str(exc)), None

        try:
            return None, self.composer.promote(assembled)
        except CompositionError as exc:
            self.composer.discard(assembled)
            return StageFailure(stage=COMPOSE_STAGE, action="promote", cause=str(exc)), None

    @staticmethod
    def _materialise_sources(sources: Mapping[str, Path]) -> dict[str, ArtifactRef]:
        refs: dict[str, ArtifactRef] = {}
        for name, path in sources.items():
            path = Path(path)
            if not path.exists():
                logger.warning("Source %s not found at %s", name, path)
                continue
            refs[name] = source(name).materialised(
                path, fingerprint_tree(path, exclude=DEFAULT_EXCLUDES)
            )
        return refs
