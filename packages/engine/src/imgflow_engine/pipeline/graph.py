from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from imgflow_engine.core.errors import DuplicateOutputError, PipelineDefinitionError

from .steps import CollectStep, Step, parse_step, step_inputs, step_outputs


@dataclass(frozen=True, slots=True)
class StepNode:
    """
    A step plus what it reads and writes.

    `dependencies` gate scheduling; `inputs` are every name the step declares
    it reads (a best-effort collect has inputs but no dependencies).
    `step_id` is unique within the graph.
    """

    index: int
    step: Step
    dependencies: frozenset[str]
    outputs: tuple[str, ...]
    step_id: str
    inputs: tuple[str, ...] = field(default=())

    @property
    def kind(self) -> str:
        return self.step.kind


def dependencies_of(step: Step) -> set[str]:
    if isinstance(step, CollectStep) and step.wait_mode == "available":
        # Gathers whatever exists when it runs; never blocks scheduling.
        return set()
    return set(step_inputs(step))


def build_dependency_graph(
    steps: Sequence[Step | Mapping[str, object]],
    *,
    allow_duplicate_outputs: bool = False,
) -> list[StepNode]:
    """
    Derive a StepNode per step. Pure function of the step list.

    Raises DuplicateOutputError when two steps declare the same output name,
    unless `allow_duplicate_outputs` is set (last write wins at run time).
    """
    parsed = [parse_step(raw) for raw in steps]  # type: ignore[arg-type]
    ids = assign_step_ids(parsed)

    nodes: list[StepNode] = []
    for index, step in enumerate(parsed):
        nodes.append(
            StepNode(
                index=index,
                step=step,
                dependencies=frozenset(dependencies_of(step)),
                outputs=tuple(step_outputs(step)),
                step_id=ids[index],
                inputs=tuple(step_inputs(step)),
            )
        )

    if not allow_duplicate_outputs:
        _check_unique_outputs(nodes)

    return nodes


def assign_step_ids(steps: Sequence[Step]) -> list[str]:
    """
    Explicit `id`, else the primary output, else "<kind>-<index>".

    Explicit ids must be unique. A derived id that is already taken falls
    back to "<kind>-<index>".
    """
    explicit: dict[str, int] = {}
    for index, step in enumerate(steps):
        if not step.id:
            continue
        if step.id in explicit:
            raise PipelineDefinitionError(
                f"Duplicate step id '{step.id}' (steps {explicit[step.id]} and {index})"
            )
        explicit[step.id] = index

    taken = set(explicit)
    ids: list[str] = []
    for index, step in enumerate(steps):
        if step.id:
            ids.append(step.id)
            continue
        outputs = step_outputs(step)
        sid = outputs[0] if outputs else f"{step.kind}-{index}"
        if sid in taken:
            sid = f"{step.kind}-{index}"
        if sid in taken:
            raise PipelineDefinitionError(
                f"Step {index} has no usable id; '{sid}' is already taken"
            )
        taken.add(sid)
        ids.append(sid)
    return ids


def _check_unique_outputs(nodes: Iterable[StepNode]) -> None:
    owners: dict[str, list[str]] = {}
    for node in nodes:
        for out in node.outputs:
            owners.setdefault(out, []).append(f"{node.kind}#{node.index}")

    dupes = sorted(name for name, who in owners.items() if len(who) > 1)
    if dupes:
        raise DuplicateOutputError(dupes[0], owners[dupes[0]])
