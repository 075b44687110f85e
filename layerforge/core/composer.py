"""Final image composer: merges stage outputs into one runnable tree.

Composition is split in two so the identity normalizer can run on the
assembled tree before anything is visible at the final location::

    assemble()  -> hidden staging tree + image-config.json
    promote()   -> rename into {output_root}/{build_identifier}

``compose()`` does both for callers that do not normalize.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path, PurePosixPath

from layerforge.core.stage_graph import StageGraph
from layerforge.models.artifacts import ArtifactRef
from layerforge.models.image import FinalArtifact, LivenessProbe
from layerforge.models.stages import StageDefinition
from layerforge.models.variant import VariantDescriptor
from layerforge.stages import DEFAULT_STAGE_DEFINITIONS, PYTHON_PACKAGES, runtime_environment

logger = logging.getLogger(__name__)

FALLBACK_VERSION = "0.0.0"
SYSTEM_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

EnvironmentFactory = Callable[[VariantDescriptor], dict[str, str]]


class CompositionError(RuntimeError):
    """A declared stage output is missing or the tree cannot be assembled."""


class ImageComposer:
    """Lays stage outputs out at their declared install paths.

    Parameters
    ----------
    output_root:
        Directory the finished trees are promoted into.
    stages:
        Stage definitions whose outputs make up the image.
    environment:
        Returns the variant's runtime environment variables.
    """

    def __init__(
        self,
        output_root: Path,
        stages: Iterable[StageDefinition] = DEFAULT_STAGE_DEFINITIONS,
        *,
        environment: EnvironmentFactory = runtime_environment,
        liveness: LivenessProbe | None = None,
        entrypoint: tuple[str, ...] = ("bash", "start.sh"),
        workdir: str = "/app/backend",
        port: int = 8080,
        version_file: str = "app/package.json",
        python_artifact: str = PYTHON_PACKAGES.name,
    ) -> None:
        self._output_root = Path(output_root)
        self._graph = stages if isinstance(stages, StageGraph) else StageGraph(stages)
        self._environment = environment
        self._liveness = liveness or LivenessProbe()
        self._entrypoint = tuple(entrypoint)
        self._workdir = workdir
        self._port = port
        self._version_file = version_file
        self._python_artifact = python_artifact

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compose(
        self, stage_outputs: Mapping[str, ArtifactRef], descriptor: VariantDescriptor
    ) -> FinalArtifact:
        """Assemble and promote in one step."""
        return self.promote(self.assemble(stage_outputs, descriptor))

    def assemble(
        self, stage_outputs: Mapping[str, ArtifactRef], descriptor: VariantDescriptor
    ) -> FinalArtifact:
        """Build the composed tree in a hidden staging directory.

        *stage_outputs* maps stage name to that stage's materialised tree,
        which holds one subdirectory per declared output.
        """
        sources = self._collect(stage_outputs)

        self._output_root.mkdir(parents=True, exist_ok=True)
        staging = self._output_root / f".compose-{uuid.uuid4().hex}"
        staging.mkdir()
        try:
            for ref, src in sources:
                dest = staging.joinpath(*ref.install_path.parts)
                logger.debug("Placing %s at /%s", ref.name, ref.install_path)
                shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)

            version = f"{self._read_version(staging)}+{descriptor.build_identifier}"
            artifact = FinalArtifact(
                root=staging,
                build_identifier=descriptor.build_identifier,
                version=version,
                environment=self._build_environment(descriptor, version),
                entrypoint=self._entrypoint,
                workdir=self._workdir,
                user=f"{descriptor.owner_uid}:{descriptor.owner_gid}",
                exposed_port=self._port,
                liveness=self._liveness,
                stage_digests={
                    name: stage_outputs[name].digest
                    for name in self._graph.topological_order
                    if name in stage_outputs
                },
            )
            self._write_manifest(artifact)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise CompositionError(f"Cannot assemble image tree: {exc}") from exc
        return artifact

    def promote(self, artifact: FinalArtifact) -> FinalArtifact:
        """Move an assembled tree to ``{output_root}/{build_identifier}``.

        A previous tree for the same identifier is moved aside first and
        removed once the new tree is in place.
        """
        target = self._output_root / artifact.build_identifier
        retired: Path | None = None
        try:
            if target.exists():
                retired = self._output_root / f".retired-{uuid.uuid4().hex}"
                os.rename(target, retired)
            os.rename(artifact.root, target)
        except OSError as exc:
            if retired is not None and not target.exists():
                os.rename(retired, target)
                retired = None
            raise CompositionError(f"Cannot promote image tree to {target}: {exc}") from exc
        finally:
            if retired is not None:
                shutil.rmtree(retired, ignore_errors=True)

        logger.info("Composed %s at %s", artifact.version, target)
        return artifact.model_copy(update={"root": target})

    def discard(self, artifact: FinalArtifact) -> None:
        """Remove an assembled tree that will not be promoted."""
        shutil.rmtree(artifact.root, ignore_errors=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _collect(self, stage_outputs: Mapping[str, ArtifactRef]) -> list[tuple[ArtifactRef, Path]]:
        missing: list[str] = []
        sources: list[tuple[ArtifactRef, Path]] = []
        for stage in self._graph.stages():
            tree = stage_outputs.get(stage.name)
            for ref in stage.outputs:
                if tree is None or tree.path is None:
                    missing.append(f"{stage.name}/{ref.name}")
                    continue
                src = tree.path / ref.name
                if not src.is_dir():
                    missing.append(f"{stage.name}/{ref.name}")
                    continue
                sources.append((ref, src))
        if missing:
            raise CompositionError(f"Missing stage outputs: {', '.join(missing)}")
        return sources

    def _install_path(self, artifact: str) -> PurePosixPath | None:
        producer = self._graph.producer_of(artifact)
        if producer is None:
            return None
        for ref in self._graph.stage(producer).outputs:
            if ref.name == artifact:
                return ref.install_path
        return None

    def _build_environment(self, descriptor: VariantDescriptor, version: str) -> dict[str, str]:
        env = dict(self._environment(descriptor))
        env["PORT"] = str(self._port)
        path = SYSTEM_PATH
        site = self._install_path(self._python_artifact)
        if site is not None:
            env["PYTHONPATH"] = f"/{site}"
            path = f"/{site}/bin:{path}"
        env["PATH"] = path
        env["WEBUI_BUILD_VERSION"] = descriptor.build_identifier
        env["APP_VERSION"] = version
        return env

    def _read_version(self, root: Path) -> str:
        candidate = root / self._version_file
        if not candidate.is_file():
            return FALLBACK_VERSION
        try:
            data = json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable %s, using %s: %s", self._version_file, FALLBACK_VERSION, exc)
            return FALLBACK_VERSION
        version = data.get("version") if isinstance(data, dict) else None
        return str(version) if version else FALLBACK_VERSION

    @staticmethod
    def _write_manifest(artifact: FinalArtifact) -> None:
        payload = artifact.model_dump(mode="json", exclude={"root"})
        artifact.manifest_path.write_text(
            json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8"
        )
