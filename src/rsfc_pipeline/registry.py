from __future__ import annotations

__all__ = ["StepKind", "StepDescriptor", "StepRegistry"]

import enum
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

if TYPE_CHECKING:
    from rsfc_pipeline.runner import StepResult, StepRunner
    from rsfc_pipeline.sessions import SubjectSession

    CommandBuilder = Callable[[SubjectSession], list[str]]
    Routine = Callable[[StepRunner, "StepDescriptor", SubjectSession], StepResult]
    Probe = Callable[[SubjectSession], bool]


class StepKind(enum.Enum):
    """How a step is executed."""

    DIRECT_COMMAND = "direct"   # one external command built per unit
    CUSTOM_ROUTINE = "custom"   # a routine issuing its own commands


@dataclass(frozen=True)
class StepDescriptor:
    """Declaration of a single pipeline step.

    ``executor`` is a command builder for :attr:`StepKind.DIRECT_COMMAND`
    steps and a routine for :attr:`StepKind.CUSTOM_ROUTINE` steps.
    A step without ``is_complete`` is never skipped.
    """

    pipeline: str
    order: int
    step_id: str
    label: str
    kind: StepKind
    executor: Union["CommandBuilder", "Routine"]
    is_complete: "Probe | None" = None
    scan_output: bool = True  # apply the output-text failure heuristic


class StepRegistry:
    """Ordered, per-pipeline collection of :class:`StepDescriptor`.

    Registration is append-only and must finish before execution starts:
    once :meth:`freeze` is called, workers read the registry without any
    synchronisation and further registration raises ``RuntimeError``.
    """

    def __init__(self) -> None:
        self._steps: dict[str, list[StepDescriptor]] = defaultdict(list)
        self._next_order: dict[str, int] = defaultdict(int)
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "StepRegistry":
        """End the registration phase and return ``self``."""
        self._frozen = True
        return self

    def register(
        self,
        pipeline: str,
        step_id: str,
        label: str,
        kind: StepKind,
        executor: Callable,
        is_complete: Callable | None = None,
        *,
        scan_output: bool = True,
    ) -> StepDescriptor:
        """Append a step to *pipeline* and return its descriptor.

        Raises
        ------
        RuntimeError
            If the registry has been frozen.
        ValueError
            If *step_id* is already registered in *pipeline*.
        """
        if self._frozen:
            raise RuntimeError(
                f"Cannot register {pipeline}/{step_id}: the step registry is frozen"
            )
        if any(s.step_id == step_id for s in self._steps[pipeline]):
            raise ValueError(f"Step {step_id!r} is already registered in pipeline {pipeline!r}")

        order = self._next_order[pipeline]
        self._next_order[pipeline] = order + 1
        step = StepDescriptor(
            pipeline=pipeline,
            order=order,
            step_id=step_id,
            label=label,
            kind=kind,
            executor=executor,
            is_complete=is_complete,
            scan_output=scan_output,
        )
        self._steps[pipeline].append(step)
        return step

    def steps_for(self, pipeline: str) -> list[StepDescriptor]:
        """Return the steps of *pipeline* in execution order ([] if unknown)."""
        if pipeline not in self._steps:
            return []
        return sorted(self._steps[pipeline], key=lambda s: s.order)

    def pipelines(self) -> list[str]:
        return [name for name, steps in self._steps.items() if steps]

    def __contains__(self, pipeline: object) -> bool:
        return bool(self._steps.get(pipeline))  # type: ignore[arg-type]
