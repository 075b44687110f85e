"""Stage dependency DAG with artifact-derived edges and cascade skipping.

The graph enforces:
- Edges come only from declared artifact inputs (producer -> consumer).
- Every artifact is produced by exactly one stage.
- Cycles and dangling inputs are construction-time errors.
- A stage is ready only when every predecessor is SUCCEEDED or CACHED.
- When a stage fails, all transitive dependents are SKIPPED.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping

from layerforge.models.stages import (
    COMPLETED_STATES,
    StageDefinition,
    StageRun,
    StageStatus,
)


class GraphDefinitionError(ValueError):
    """Raised when stage definitions do not form a consistent graph."""


class CyclicDependencyError(GraphDefinitionError):
    """Raised when the stage graph contains a cycle."""


class StageGraph:
    """Directed acyclic graph of build stages.

    Built once from ``StageDefinition`` objects; immutable afterwards.
    """

    def __init__(self, stage_definitions: Iterable[StageDefinition]) -> None:
        definitions = list(stage_definitions)
        self._order_hint: dict[str, int] = {}
        self._stages: dict[str, StageDefinition] = {}
        for index, sd in enumerate(definitions):
            if sd.name in self._stages:
                raise GraphDefinitionError(f"Duplicate stage name {sd.name!r}")
            self._stages[sd.name] = sd
            self._order_hint[sd.name] = index

        # Artifact ownership: artifact name -> producing stage
        self._producers: dict[str, str] = {}
        for sd in definitions:
            for ref in sd.outputs:
                if ref.producer not in (None, sd.name):
                    raise GraphDefinitionError(
                        f"Stage {sd.name!r} declares output {ref.name!r} "
                        f"owned by {ref.producer!r}"
                    )
                owner = self._producers.get(ref.name)
                if owner is not None:
                    raise GraphDefinitionError(
                        f"Artifact {ref.name!r} is produced by both "
                        f"{owner!r} and {sd.name!r}"
                    )
                self._producers[ref.name] = sd.name

        # Forward edges: stage -> predecessors; reverse: stage -> direct dependents
        self._predecessors: dict[str, list[str]] = {name: [] for name in self._stages}
        self._dependents: dict[str, list[str]] = {name: [] for name in self._stages}
        for sd in definitions:
            for ref in sd.stage_inputs:
                if ref.producer not in self._stages:
                    raise GraphDefinitionError(
                        f"Stage {sd.name!r} consumes {ref.name!r} from unknown "
                        f"stage {ref.producer!r}"
                    )
                if self._producers.get(ref.name) != ref.producer:
                    raise GraphDefinitionError(
                        f"Stage {sd.name!r} consumes {ref.name!r}, which "
                        f"{ref.producer!r} does not declare as an output"
                    )
                if ref.producer not in self._predecessors[sd.name]:
                    self._predecessors[sd.name].append(ref.producer)
                    self._dependents[ref.producer].append(sd.name)

        self._topological = self._sort()

    def _sort(self) -> list[str]:
        """Kahn's algorithm; ties broken by declaration order."""
        in_degree = {name: len(preds) for name, preds in self._predecessors.items()}
        queue = deque(
            sorted(
                (name for name, deg in in_degree.items() if deg == 0),
                key=self._order_hint.__getitem__,
            )
        )
        result: list[str] = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(self._dependents[node], key=self._order_hint.__getitem__):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(result) != len(self._stages):
            stuck = sorted(set(self._stages) - set(result))
            raise CyclicDependencyError(
                f"Stage graph has a cycle through: {', '.join(stuck)}"
            )
        return result

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def topological_order(self) -> list[str]:
        """All stage names, every stage after all of its predecessors."""
        return list(self._topological)

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def stage(self, name: str) -> StageDefinition:
        return self._stages[name]

    def stages(self) -> list[StageDefinition]:
        return [self._stages[name] for name in self._topological]

    def predecessors(self, name: str) -> list[str]:
        """Direct upstream stages of *name*."""
        return list(self._predecessors[name])

    def dependents(self, name: str) -> list[str]:
        """All transitive downstream stages of *name* (BFS order)."""
        result: list[str] = []
        queue = deque(self._dependents[name])
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents[node])
        return result

    def producer_of(self, artifact: str) -> str | None:
        return self._producers.get(artifact)

    def final_outputs(self) -> list[tuple[str, str]]:
        """``(stage, artifact)`` pairs for every declared stage output."""
        return [
            (name, ref.name)
            for name in self._topological
            for ref in self._stages[name].outputs
        ]

    # ------------------------------------------------------------------
    # Scheduling helpers
    # ------------------------------------------------------------------

    def is_ready(self, name: str, runs: Mapping[str, StageRun]) -> bool:
        """Pending, with every predecessor SUCCEEDED or CACHED."""
        if runs[name].status != StageStatus.PENDING:
            return False
        return all(runs[p].status in COMPLETED_STATES for p in self._predecessors[name])

    def ready(self, runs: Mapping[str, StageRun]) -> list[str]:
        """Stages that may be dispatched now, in topological order."""
        return [name for name in self._topological if self.is_ready(name, runs)]

    def blocking_reasons(self, name: str, runs: Mapping[str, StageRun]) -> list[str]:
        return [
            f"{p} is {runs[p].status.value}"
            for p in self._predecessors[name]
            if runs[p].status not in COMPLETED_STATES
        ]

    def cascade_skip(self, failed: str, runs: Mapping[str, StageRun]) -> list[str]:
        """Mark every pending transitive dependent of *failed* as SKIPPED.

        Returns the names that were newly skipped.
        """
        skipped: list[str] = []
        for name in self.dependents(failed):
            if runs[name].status == StageStatus.PENDING:
                runs[name].transition(StageStatus.SKIPPED)
                skipped.append(name)
        return skipped
