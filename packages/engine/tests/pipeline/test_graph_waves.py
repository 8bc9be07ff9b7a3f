from __future__ import annotations

from typing import Any

import pytest
from imgflow_engine.core import (
    DuplicateOutputError,
    PipelineDefinitionError,
    UnsatisfiableGraphError,
)
from imgflow_engine.pipeline.graph import build_dependency_graph
from imgflow_engine.pipeline.waves import compute_execution_waves, linearize


def _gen(out: str, **kw: Any) -> dict[str, Any]:
    return {"kind": "generate", "out": out, **kw}


def _tx(src: str, out: str, op: str = "resize") -> dict[str, Any]:
    return {"kind": "transform", "op": op, "in": src, "out": out}


def _wave_outputs(steps: list[dict[str, Any]], pre: set[str] | None = None) -> list[list[str]]:
    waves = compute_execution_waves(build_dependency_graph(steps), pre)
    return [[n.outputs[0] if n.outputs else n.step_id for n in w.steps] for w in waves]


def test_graph_dependencies_per_kind() -> None:
    nodes = build_dependency_graph(
        [
            _gen("a"),
            {"kind": "text", "out": "t"},
            {"kind": "text", "in": "desc", "out": "t2"},
            {"kind": "save", "in": "a", "destination": "./a.png"},
            {"kind": "fan-out", "in": "a", "mode": "count", "count": 2, "out": ["a1", "a2"]},
            {"kind": "collect", "in": ["a1", "a2"], "out": "all"},
            {"kind": "collect", "in": ["a1", "zz"], "waitMode": "available", "out": "some"},
            {
                "kind": "router",
                "in": "all",
                "selectionIn": "pick",
                "selectionType": "index",
                "selectionProperty": "i",
                "out": "best",
            },
        ]
    )
    deps = [set(n.dependencies) for n in nodes]
    assert deps == [set(), set(), {"desc"}, {"a"}, {"a"}, {"a1", "a2"}, set(), {"all", "pick"}]
    assert nodes[3].outputs == ()
    assert nodes[4].outputs == ("a1", "a2")
    assert nodes[6].inputs == ("a1", "zz")


def test_step_ids_prefer_explicit_id_then_output() -> None:
    nodes = build_dependency_graph(
        [
            _gen("a", id="hero"),
            _gen("b"),
            {"kind": "save", "in": "a", "destination": "./a.png"},
        ]
    )
    assert [n.step_id for n in nodes] == ["hero", "b", "save-2"]


def test_duplicate_outputs_rejected_unless_allowed() -> None:
    steps = [_gen("a"), _gen("a")]
    with pytest.raises(DuplicateOutputError) as ei:
        build_dependency_graph(steps)
    assert ei.value.name == "a"
    assert len(build_dependency_graph(steps, allow_duplicate_outputs=True)) == 2


def test_explicit_step_ids_must_be_unique() -> None:
    with pytest.raises(PipelineDefinitionError, match="Duplicate step id 's'"):
        build_dependency_graph([_gen("a", id="s"), _gen("b", id="s")])


def test_derived_step_ids_never_collide() -> None:
    # an explicit id shadowing another step's output
    nodes = build_dependency_graph([_gen("a", id="b"), _gen("b")])
    assert [n.step_id for n in nodes] == ["b", "generate-1"]

    nodes = build_dependency_graph([_gen("a"), _gen("a")], allow_duplicate_outputs=True)
    assert [n.step_id for n in nodes] == ["a", "generate-1"]


def test_independent_generates_share_first_wave() -> None:
    assert _wave_outputs([_gen("a"), _gen("b")]) == [["a", "b"]]


def test_linear_chain_has_one_step_per_wave() -> None:
    waves = _wave_outputs([_tx("b", "c"), _gen("a"), _tx("a", "b")])
    assert waves == [["a"], ["b"], ["c"]]


def test_every_step_appears_in_exactly_one_wave() -> None:
    steps = [
        _gen("a"),
        _gen("b"),
        _tx("a", "c"),
        _tx("b", "d"),
        {"kind": "collect", "in": ["c", "d"], "out": "cd"},
        _tx("c", "e"),
        {"kind": "collect", "in": ["e", "q"], "waitMode": "available", "out": "maybe"},
    ]
    nodes = build_dependency_graph(steps)
    waves = compute_execution_waves(nodes)
    seen = [n.index for w in waves for n in w.steps]
    assert sorted(seen) == list(range(len(steps)))

    produced_before: set[str] = set()
    for w in waves:
        for n in w.steps:
            assert n.dependencies <= produced_before
        for n in w.steps:
            produced_before.update(n.outputs)


def test_best_effort_collect_lands_in_first_wave() -> None:
    waves = _wave_outputs(
        [_gen("a"), _tx("a", "b"), {"kind": "collect", "in": ["a", "b"], "waitMode": "available", "out": "c"}]
    )
    assert waves == [["a", "c"], ["b"]]


def test_pre_satisfied_names_unblock_steps() -> None:
    assert _wave_outputs([_tx("upload", "small")], {"upload"}) == [["small"]]


def test_missing_input_names_step_and_variable() -> None:
    with pytest.raises(UnsatisfiableGraphError) as ei:
        compute_execution_waves(build_dependency_graph([_gen("a"), _tx("typo", "b")]))
    err = ei.value
    assert err.unsatisfied == [{"step": "b", "index": 1, "kind": "transform", "needs": ["typo"]}]
    assert "typo" in str(err)
    assert err.retryable is False


def test_cycle_lists_both_steps() -> None:
    with pytest.raises(UnsatisfiableGraphError) as ei:
        compute_execution_waves(build_dependency_graph([_tx("x", "y"), _tx("y", "x")]))
    assert [(u["step"], u["needs"]) for u in ei.value.unsatisfied] == [
        ("y", ["x"]),
        ("x", ["y"]),
    ]


def test_require_all_collect_with_absent_input_fails_scheduling() -> None:
    with pytest.raises(UnsatisfiableGraphError):
        compute_execution_waves(
            build_dependency_graph([_gen("a"), {"kind": "collect", "in": ["a", "ghost"], "out": "c"}])
        )


def test_linearize_orders_by_wave_then_index() -> None:
    nodes = build_dependency_graph([_tx("a", "c"), _gen("a"), _gen("b"), _tx("b", "d")])
    order = [n.index for n in linearize(compute_execution_waves(nodes))]
    assert order == [1, 2, 0, 3]
