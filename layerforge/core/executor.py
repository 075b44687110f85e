"""Conditional provisioning executor: runs one stage's ordered actions.

Lifecycle of ``ProvisioningExecutor.run``::

    create staging (one dir per declared output) + workspace
        -> for each action, in order:
               evaluate condition against the descriptor (just in time)
               run side effect in a fresh scratch dir (retry if retryable)
        -> rename staging into a fresh output dir (atomic promotion)
        -> fingerprint output

A failure anywhere removes staging, so a half-populated output is never
visible to downstream consumers.  Every run starts from empty staging,
which is what makes a forced re-run of an unchanged stage idempotent.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
import uuid
from collections.abc import Callable, Mapping
from pathlib import Path

import httpx

from layerforge.core.hasher import fingerprint_tree
from layerforge.models.actions import ActionContext, ProvisioningAction
from layerforge.models.artifacts import ArtifactKind, ArtifactRef
from layerforge.models.stages import StageDefinition
from layerforge.models.variant import VariantDescriptor
from layerforge.toolchain.protocols import Toolchain

logger = logging.getLogger(__name__)

# Pseudo action name used when a stage fails before any action runs.
INPUTS_ACTION = "<inputs>"

ActionCallback = Callable[[str, str], None]


class ProvisioningError(RuntimeError):
    """An action's side effect failed.

    Attributes
    ----------
    stage, action:
        Where the failure happened.
    cause:
        The underlying exception (or a message).
    retryable:
        True for deadline overruns and transport failures.
    """

    def __init__(
        self,
        stage: str,
        action: str,
        cause: BaseException | str,
        *,
        retryable: bool = False,
    ) -> None:
        self.stage = stage
        self.action = action
        self.cause = cause
        self.retryable = retryable
        super().__init__(f"Stage {stage} action {action} failed: {cause}")


def is_retryable(exc: BaseException) -> bool:
    """Deadline overruns and transport-level failures are worth retrying."""
    if isinstance(exc, (subprocess.TimeoutExpired, TimeoutError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


class ProvisioningExecutor:
    """Executes stage action lists against a resolved descriptor.

    Parameters
    ----------
    work_root:
        Directory for per-stage staging, workspace and output trees.
    toolchain:
        Collaborators exposed to actions through their context.
    fetch_timeout:
        Deadline in seconds handed to fetching actions.
    fetch_retries:
        Extra attempts for a fetching action after a retryable failure.
    retry_backoff:
        Base delay between attempts (multiplied by the attempt number).
    on_action:
        Called with ``(stage, action)`` right before an action's side
        effect first runs.
    """

    def __init__(
        self,
        work_root: Path,
        toolchain: Toolchain,
        *,
        fetch_timeout: float = 300.0,
        fetch_retries: int = 2,
        retry_backoff: float = 1.0,
        on_action: ActionCallback | None = None,
    ) -> None:
        self._work_root = Path(work_root)
        self._toolchain = toolchain
        self._fetch_timeout = fetch_timeout
        self._fetch_retries = max(0, fetch_retries)
        self._retry_backoff = retry_backoff
        self._on_action = on_action

    def plan(self, stage: StageDefinition, descriptor: VariantDescriptor) -> list[tuple[ProvisioningAction, bool]]:
        """Static view: each action with whether it applies to *descriptor*."""
        return [(action, action.applies_to(descriptor)) for action in stage.actions]

    def run(
        self,
        stage: StageDefinition,
        descriptor: VariantDescriptor,
        inputs: Mapping[str, ArtifactRef],
        *,
        on_action: ActionCallback | None = None,
    ) -> ArtifactRef:
        """Run *stage* and return its promoted output tree.

        Raises ``ProvisioningError`` naming the failing action.
        """
        callback = on_action or self._on_action
        input_paths, input_digests = self._resolve_inputs(stage, inputs)

        stage_dir = self._work_root / stage.name
        stage_dir.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex
        staging = stage_dir / f".staging-{token}"
        workspace = stage_dir / f".workspace-{token}"
        for ref in stage.outputs:
            (staging / ref.name).mkdir(parents=True)
        workspace.mkdir(parents=True)

        logger.info("%s [%s] starting (%d actions)", stage.display_name, stage.name, len(stage.actions))
        try:
            for action in stage.actions:
                if not action.applies_to(descriptor):
                    logger.info(
                        "%s [%s] skip %s (%s)",
                        stage.display_name, stage.name, action.name, action.condition.describe(),
                    )
                    continue
                if callback is not None:
                    callback(stage.name, action.name)
                self._run_action(stage, action, descriptor, staging, workspace, input_paths, input_digests)

            output_dir = stage_dir / f"output-{token}"
            os.rename(staging, output_dir)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

        digest = fingerprint_tree(output_dir)
        logger.info("%s [%s] produced %s", stage.display_name, stage.name, digest)
        return ArtifactRef(
            name=stage.name,
            producer=stage.name,
            kind=ArtifactKind.STAGE_OUTPUT,
            path=output_dir,
            digest=digest,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_inputs(
        stage: StageDefinition, inputs: Mapping[str, ArtifactRef]
    ) -> tuple[dict[str, Path], dict[str, str]]:
        paths: dict[str, Path] = {}
        digests: dict[str, str] = {}
        for declared in stage.inputs:
            ref = inputs.get(declared.name)
            if ref is None or ref.path is None or not ref.path.exists():
                raise ProvisioningError(
                    stage.name, INPUTS_ACTION, f"input artifact {declared.name!r} is not available"
                )
            paths[declared.name] = ref.path
            digests[declared.name] = ref.digest
        return paths, digests

    def _run_action(
        self,
        stage: StageDefinition,
        action: ProvisioningAction,
        descriptor: VariantDescriptor,
        staging: Path,
        workspace: Path,
        input_paths: dict[str, Path],
        input_digests: dict[str, str],
    ) -> None:
        attempts = 1 + (self._fetch_retries if action.fetches else 0)
        timeout = self._fetch_timeout if action.fetches else None

        for attempt in range(1, attempts + 1):
            scratch = workspace / ".scratch" / f"{action.name}-{attempt}"
            scratch.mkdir(parents=True)
            ctx = ActionContext(
                stage=stage.name,
                descriptor=descriptor,
                staging=staging,
                workspace=workspace,
                scratch=scratch,
                inputs=dict(input_paths),
                toolchain=self._toolchain,
                timeout=timeout,
                input_digests=dict(input_digests),
            )
            started = time.monotonic()
            try:
                action.effect(ctx)
            except ProvisioningError:
                raise
            except Exception as exc:
                retryable = is_retryable(exc)
                if retryable and attempt < attempts:
                    logger.warning(
                        "%s [%s] %s attempt %d/%d failed, retrying: %s",
                        stage.display_name, stage.name, action.name, attempt, attempts, exc,
                    )
                    time.sleep(self._retry_backoff * attempt)
                    continue
                logger.error(
                    "%s [%s] %s failed: %s", stage.display_name, stage.name, action.name, exc,
                )
                raise ProvisioningError(stage.name, action.name, exc, retryable=retryable) from exc
            else:
                logger.info(
                    "%s [%s] %s done in %.2fs",
                    stage.display_name, stage.name, action.name, time.monotonic() - started,
                )
                return
            finally:
                shutil.rmtree(scratch, ignore_errors=True)
