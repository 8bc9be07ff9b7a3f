from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from imgflow_engine.core import (
    ILogger,
    bound,
    configure_logging,
    format_duration_ms,
    get_logger,
    load_settings,
    monotonic_ms,
    new_run_id,
)
from imgflow_engine.providers.registry import ProviderRegistry

from .concurrency import run_bounded
from .context import RunContext
from .dispatch import StepDispatcher, StepOutcome
from .events import EventSink, EventType
from .graph import build_dependency_graph
from .steps import Pipeline, load_pipeline
from .store import VariableStore
from .types import PipelineResult
from .waves import compute_execution_waves


@dataclass(slots=True)
class RunnerConfig:
    # Fallback in-flight bound when the pipeline declares none; None = unbounded.
    concurrency: Optional[int] = None
    allow_duplicate_outputs: bool = False


@dataclass(frozen=True, slots=True)
class WaveRun:
    run_id: str
    results: list[PipelineResult]
    variables: dict[str, Any]
    waves: int
    duration_ms: int


def default_logger() -> ILogger:
    """
    Provide a structlog BoundLogger that satisfies ILogger.
    """
    configure_logging(load_settings())
    return get_logger("pipeline")


class PipelineRunner:
    """
    Wave-parallel execution.

    Steps of one wave run concurrently (bounded by the pipeline's
    concurrency); waves run strictly one after another. The store is written
    only between waves by this coordinator.

    Fail-fast without rollback: the first failing step aborts the run and is
    the error raised to the caller. Sibling steps of the same wave that had
    already started are not cancelled, so their side effects (a save write,
    say) may still land even though the run reports failure.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        cfg: RunnerConfig | None = None,
        logger: ILogger | None = None,
        events: EventSink | None = None,
    ) -> None:
        self.registry = registry
        self.dispatcher = StepDispatcher(registry)
        self.cfg = cfg or RunnerConfig()
        self.logger: ILogger = logger or default_logger()
        self.events = events

    async def run(
        self, pipeline: Pipeline | Mapping[str, Any], *, run_id: str | None = None
    ) -> list[PipelineResult]:
        return (await self.execute(pipeline, run_id=run_id)).results

    async def execute(
        self, pipeline: Pipeline | Mapping[str, Any], *, run_id: str | None = None
    ) -> WaveRun:
        if not isinstance(pipeline, Pipeline):
            pipeline = load_pipeline(pipeline)

        rid = run_id or new_run_id()
        # module-level loggers (dispatcher, providers) pick up the run id too
        with bound(run_id=rid):
            return await self._execute(pipeline, rid)

    async def _execute(self, pipeline: Pipeline, rid: str) -> WaveRun:
        store = VariableStore(pipeline.initial_variables)
        log = self.logger.bind(run_id=rid, pipeline=pipeline.display_name)
        ctx = RunContext(
            run_id=rid,
            pipeline=pipeline.display_name,
            logger=log,
            store=store,
            events=self.events,
        )

        for name in pipeline.initial_variables:
            log.debug("Loaded initial variable", variable=name)

        nodes = build_dependency_graph(
            pipeline.steps, allow_duplicate_outputs=self.cfg.allow_duplicate_outputs
        )
        waves = compute_execution_waves(nodes, store.names())
        concurrency = pipeline.concurrency or self.cfg.concurrency

        t0 = monotonic_ms()
        log.info(
            "Pipeline starting",
            steps=len(nodes),
            waves=len(waves),
            concurrency=concurrency or "unbounded",
        )
        ctx.emit(EventType.RUN_START, steps=len(nodes), waves=len(waves))

        results: list[PipelineResult] = []
        try:
            for wave in waves:
                ctx.emit(EventType.WAVE_START, wave=wave.index, size=len(wave))

                outcomes: list[StepOutcome] = await run_bounded(
                    [
                        (lambda n=node: self.dispatcher.dispatch(n, store))
                        for node in wave.steps
                    ],
                    concurrency,
                )

                for outcome in outcomes:
                    store.apply(outcome.writes)
                    results.append(
                        PipelineResult(
                            step=outcome.node.step, out=outcome.out, value=outcome.value
                        )
                    )

                ctx.emit(EventType.WAVE_FINISH, wave=wave.index, size=len(wave))
        except Exception as e:
            duration = monotonic_ms() - t0
            log.error(
                "Pipeline failed",
                error=str(e),
                exc_type=type(e).__name__,
                completed_steps=len(results),
                duration_ms=duration,
                duration=format_duration_ms(duration),
            )
            ctx.emit(EventType.RUN_FINISH, status="failed", error=str(e))
            raise

        duration = monotonic_ms() - t0
        ctx.emit(EventType.RUN_FINISH, status="success", duration_ms=duration)
        log.info(
            "Pipeline completed",
            steps=len(results),
            duration_ms=duration,
            duration=format_duration_ms(duration),
        )
        return WaveRun(
            run_id=rid,
            results=results,
            variables=store.snapshot(),
            waves=len(waves),
            duration_ms=duration,
        )
