from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from imgflow_engine.core.errors import UnsatisfiableGraphError

from .graph import StepNode


@dataclass(frozen=True, slots=True)
class ExecutionWave:
    """Steps whose dependencies are all satisfied by earlier waves."""

    index: int
    steps: tuple[StepNode, ...]

    def __len__(self) -> int:
        return len(self.steps)


def compute_execution_waves(
    nodes: Sequence[StepNode],
    pre_satisfied: Iterable[str] | None = None,
) -> list[ExecutionWave]:
    """
    Greedy level assignment.

    Each pass collects every remaining node whose dependencies are already
    satisfied, then marks that wave's outputs satisfied. A pass that makes no
    progress means a cycle or a missing input; the error lists every blocked
    node with the names it is still waiting on.

    O(steps^2) in the worst case.
    """
    satisfied: set[str] = set(pre_satisfied or ())
    remaining: list[StepNode] = sorted(nodes, key=lambda n: n.index)
    waves: list[ExecutionWave] = []

    while remaining:
        wave = [n for n in remaining if n.dependencies <= satisfied]

        if not wave:
            raise UnsatisfiableGraphError(
                [
                    {
                        "step": n.step_id,
                        "index": n.index,
                        "kind": n.kind,
                        "needs": sorted(n.dependencies - satisfied),
                    }
                    for n in remaining
                ]
            )

        in_wave = {n.index for n in wave}
        remaining = [n for n in remaining if n.index not in in_wave]
        for n in wave:
            satisfied.update(n.outputs)

        waves.append(ExecutionWave(index=len(waves), steps=tuple(wave)))

    return waves


def linearize(waves: Iterable[ExecutionWave]) -> list[StepNode]:
    """Wave order, then declaration order within a wave."""
    out: list[StepNode] = []
    for wave in waves:
        out.extend(sorted(wave.steps, key=lambda n: n.index))
    return out
