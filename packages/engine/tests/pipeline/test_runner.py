from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
import structlog
from imgflow_engine.core import GenerationError, UnsatisfiableGraphError
from imgflow_engine.pipeline.events import EventSink
from imgflow_engine.pipeline.progressive import ProgressiveRunner
from imgflow_engine.pipeline.runner import PipelineRunner, RunnerConfig
from imgflow_engine.pipeline.types import ImageArtifact
from imgflow_engine.providers.registry import ProviderRegistry


def _run(runner: PipelineRunner, pipeline: dict[str, Any]):
    return asyncio.run(runner.execute(pipeline))


def test_runs_waves_and_records_results_in_wave_order(registry: ProviderRegistry) -> None:
    runner = PipelineRunner(registry=registry)
    run = _run(
        runner,
        {
            "steps": [
                {"kind": "transform", "op": "blur", "in": "a", "out": "c"},
                {"kind": "generate", "params": {"prompt": "a", "delay": 0.02}, "out": "a"},
                {"kind": "generate", "params": {"prompt": "b"}, "out": "b"},
                {"kind": "save", "in": "c", "destination": "c.png"},
            ]
        },
    )
    assert [r.out for r in run.results] == ["a", "b", "c", "c.png"]
    assert run.waves == 3
    assert run.variables["c"].bytes == b"a|blur"
    assert "c.png" not in run.variables


def test_concurrency_bound_comes_from_pipeline(registry: ProviderRegistry, generator) -> None:
    runner = PipelineRunner(registry=registry, cfg=RunnerConfig(concurrency=4))
    steps = [
        {"kind": "generate", "params": {"prompt": str(i), "delay": 0.01}, "out": f"g{i}"}
        for i in range(6)
    ]
    _run(runner, {"steps": steps, "concurrency": 2})
    assert generator.max_in_flight == 2

    generator.max_in_flight = 0
    _run(runner, {"steps": steps})
    assert generator.max_in_flight == 4


def test_initial_variables_satisfy_inputs(registry: ProviderRegistry) -> None:
    upload = ImageArtifact(bytes=b"up", format="image/png")
    runner = PipelineRunner(registry=registry)
    results = asyncio.run(
        runner.run(
            {
                "initialVariables": {"upload": upload},
                "steps": [{"kind": "transform", "op": "resize", "in": "upload", "out": "small"}],
            }
        )
    )
    assert results[0].value.bytes == b"up|resize"


def test_first_failure_aborts_later_waves(registry: ProviderRegistry, generator) -> None:
    runner = PipelineRunner(registry=registry)
    with pytest.raises(GenerationError):
        _run(
            runner,
            {
                "steps": [
                    {"kind": "generate", "params": {"fail": True}, "out": "a"},
                    {"kind": "generate", "params": {"prompt": "b"}, "out": "b"},
                    {"kind": "transform", "op": "blur", "in": "b", "out": "c"},
                ]
            },
        )
    # the failing wave's sibling ran, the next wave never started
    assert len(generator.calls) == 2


def test_unsatisfiable_graph_fails_before_any_step(registry: ProviderRegistry, generator) -> None:
    runner = PipelineRunner(registry=registry)
    with pytest.raises(UnsatisfiableGraphError):
        _run(
            runner,
            {
                "steps": [
                    {"kind": "generate", "out": "a"},
                    {"kind": "transform", "op": "x", "in": "x", "out": "y"},
                    {"kind": "transform", "op": "y", "in": "y", "out": "x"},
                ]
            },
        )
    assert generator.calls == []


def test_fan_out_collect_router_pipeline(registry: ProviderRegistry) -> None:
    runner = PipelineRunner(registry=registry)
    run = _run(
        runner,
        {
            "steps": [
                {"kind": "generate", "params": {"prompt": "seed"}, "out": "seed"},
                {"kind": "fan-out", "in": "seed", "mode": "count", "count": 3, "out": ["s1", "s2", "s3"]},
                {"kind": "transform", "op": "warm", "in": "s1", "out": "v1"},
                {"kind": "transform", "op": "cool", "in": "s2", "out": "v2"},
                {"kind": "transform", "op": "mono", "in": "s3", "out": "v3"},
                {"kind": "collect", "in": ["v1", "v2", "v3"], "out": "variants"},
                {"kind": "text", "params": {"json": {"best": 2}}, "out": "verdict"},
                {
                    "kind": "router",
                    "in": "variants",
                    "selectionIn": "verdict",
                    "selectionType": "index",
                    "selectionProperty": "best",
                    "out": "winner",
                },
            ]
        },
    )
    assert run.variables["winner"].bytes == b"seed|mono"
    assert run.results[-1].out == "winner"


def test_run_events_written_to_sink(registry: ProviderRegistry, tmp_path: Path) -> None:
    sink = EventSink(tmp_path / "events.jsonl")
    runner = PipelineRunner(registry=registry, events=sink)
    _run(runner, {"steps": [{"kind": "generate", "out": "a"}]})
    types = [r["type"] for r in sink.read()]
    assert types == ["run.env", "run.start", "wave.start", "wave.finish", "run.finish"]


def test_shared_sink_writes_one_env_record_per_run(
    registry: ProviderRegistry, tmp_path: Path
) -> None:
    sink = EventSink(tmp_path / "events.jsonl")
    assert sink.read() == []
    runner = PipelineRunner(registry=registry, events=sink)
    pipeline = {"steps": [{"kind": "generate", "out": "a"}]}

    asyncio.run(runner.execute(pipeline, run_id="first"))
    asyncio.run(runner.execute(pipeline, run_id="second"))

    envs = [r for r in sink.read() if r["type"] == "run.env"]
    assert [r["run_id"] for r in envs] == ["first", "second"]
    assert envs[0]["data"]["pid"] > 0
    second = sink.read("second")
    assert second[0]["type"] == "run.env"
    assert second[-1]["type"] == "run.finish"
    assert {r["run_id"] for r in second} == {"second"}


class _ContextRecordingGenerator:
    name = "ctx"

    def __init__(self) -> None:
        self.seen: list[dict[str, Any]] = []

    async def generate(self, params: dict[str, Any]) -> ImageArtifact:
        self.seen.append(structlog.contextvars.get_contextvars())
        return ImageArtifact(bytes=b"x", format="image/png")


@pytest.mark.parametrize("mode", ["waves", "progressive"])
def test_run_id_is_bound_for_providers_and_caller_context_survives(
    registry: ProviderRegistry, mode: str
) -> None:
    gen = _ContextRecordingGenerator()
    registry.register_generator(gen)
    pipeline = {"steps": [{"kind": "generate", "generator": "ctx", "out": "a"}]}

    async def main() -> dict[str, Any]:
        structlog.contextvars.bind_contextvars(request="r-1")
        if mode == "waves":
            await PipelineRunner(registry=registry).execute(pipeline, run_id="run-1")
        else:
            await ProgressiveRunner(registry=registry).run(pipeline, run_id="run-1")
        return structlog.contextvars.get_contextvars()

    after = asyncio.run(main())
    assert gen.seen[0]["run_id"] == "run-1"
    assert gen.seen[0]["request"] == "r-1"
    assert after == {"request": "r-1"}
