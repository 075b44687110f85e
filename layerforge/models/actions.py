"""Provisioning action models: declarative conditions plus side effects.

Conditions are data, not code: every action states which descriptor
fields it reads and which values it requires.  This lets the action list be
inspected without execution (``layerforge plan``) and lets the cache key
include exactly the fields a stage depends on.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from layerforge.models.variant import VariantDescriptor

if TYPE_CHECKING:
    from layerforge.toolchain.protocols import Toolchain


class Condition(BaseModel):
    """Declarative predicate over a ``VariantDescriptor``.

    ``equals`` maps a descriptor field to the value it must hold;
    ``non_empty`` lists fields that must be truthy (non-empty strings,
    non-empty tuples).  The empty condition always holds.
    """

    model_config = ConfigDict(frozen=True)

    equals: dict[str, Any] = Field(default_factory=dict)
    non_empty: tuple[str, ...] = ()

    @property
    def fields(self) -> frozenset[str]:
        """Descriptor fields this condition reads."""
        return frozenset(self.equals) | frozenset(self.non_empty)

    def evaluate(self, descriptor: VariantDescriptor) -> bool:
        for name, expected in self.equals.items():
            if getattr(descriptor, name) != expected:
                return False
        return all(getattr(descriptor, name) for name in self.non_empty)

    def describe(self) -> str:
        """Short human-readable rendering used by the plan view."""
        parts = [f"{k}={v!r}" for k, v in sorted(self.equals.items())]
        parts.extend(f"{k} non-empty" for k in self.non_empty)
        return " and ".join(parts) or "always"


ALWAYS = Condition()


def when(*non_empty: str, **equals: Any) -> Condition:
    """Build a ``Condition``: ``when(accelerator_enabled=True)``."""
    return Condition(equals=equals, non_empty=tuple(non_empty))


@dataclass
class ActionContext:
    """Everything a side effect may touch while it runs.

    ``staging`` holds one directory per declared stage output and is
    promoted atomically at the end of the stage.  ``workspace`` is shared by
    all actions of one stage run and discarded afterwards; ``scratch`` is
    private to the current action attempt.  ``inputs`` maps artifact names
    to read-only materialised locations, ``input_digests`` to their content
    digests.  ``timeout`` is the deadline for external calls, ``None`` when
    the action does not fetch.
    """

    stage: str
    descriptor: VariantDescriptor
    staging: Path
    workspace: Path
    scratch: Path
    inputs: dict[str, Path]
    toolchain: Toolchain
    timeout: float | None = None
    input_digests: dict[str, str] = field(default_factory=dict)

    def output(self, name: str) -> Path:
        """Staging directory for the declared output *name*."""
        path = self.staging / name
        if not path.is_dir():
            raise KeyError(f"Stage {self.stage!r} declares no output {name!r}")
        return path

    def input_path(self, name: str) -> Path:
        try:
            return self.inputs[name]
        except KeyError:
            raise KeyError(
                f"Stage {self.stage!r} has no input artifact {name!r}. "
                f"Available: {sorted(self.inputs)}"
            ) from None


class ProvisioningAction(BaseModel):
    """One idempotent, ordered unit of work inside a stage.

    Parameters
    ----------
    name:
        Identifier reported in logs and failures.
    condition:
        Evaluated against the descriptor immediately before execution.
    uses:
        Descriptor fields the side effect itself reads (beyond the
        condition).  Contributes to the stage cache key.
    effect:
        ``effect(ctx) -> None``; writes only beneath ``ctx.staging``,
        ``ctx.workspace`` or ``ctx.scratch``.
    fetches:
        True for actions that reach external endpoints; these receive the
        fetch deadline and are retried on retryable failure.
    prefetch:
        True for optional model-prefetch actions.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    effect: Callable[[ActionContext], None]
    condition: Condition = ALWAYS
    uses: frozenset[str] = frozenset()
    fetches: bool = False
    prefetch: bool = False
    description: str = ""

    @property
    def fields(self) -> frozenset[str]:
        """All descriptor fields this action depends on."""
        return self.condition.fields | self.uses

    def applies_to(self, descriptor: VariantDescriptor) -> bool:
        return self.condition.evaluate(descriptor)
