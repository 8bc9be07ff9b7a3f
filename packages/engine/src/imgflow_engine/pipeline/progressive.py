from __future__ import annotations

import asyncio
import base64
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Union

from imgflow_engine.core import (
    GatingRejectedError,
    ILogger,
    ProviderError,
    bound,
    load_settings,
    monotonic_ms,
    new_run_id,
    step_error_from_exc,
    utc_now_iso,
)
from imgflow_engine.providers.base import ContentGate, GateVerdict
from imgflow_engine.providers.registry import ProviderRegistry

from .concurrency import call_provider
from .context import RunContext
from .dispatch import StepDispatcher, StepOutcome
from .events import (
    EventSink,
    EventType,
    RunStatus,
    SkipReason,
    StepEvent,
    StepStatus,
    make_step_event,
)
from .graph import StepNode, build_dependency_graph
from .report import RunReport, build_run_report
from .runner import default_logger
from .steps import Pipeline, load_pipeline
from .store import VariableStore
from .types import DataArtifact, ImageArtifact, is_artifact, summarize_parsed
from .waves import compute_execution_waves, linearize

Previewer = Callable[[ImageArtifact], Optional[str]]
CancelSignal = Union[asyncio.Event, threading.Event, Callable[[], bool]]

# Kinds whose results come from an external provider and may be gated.
_GATED_KINDS = frozenset({"generate", "transform", "vision", "text"})


def data_url_preview(image: ImageArtifact) -> str:
    encoded = base64.b64encode(image.bytes).decode("ascii")
    return f"data:{image.format};base64,{encoded}"


def is_cancelled(signal: CancelSignal | None) -> bool:
    if signal is None:
        return False
    if isinstance(signal, (asyncio.Event, threading.Event)):
        return signal.is_set()
    return bool(signal())


@dataclass(slots=True)
class ProgressiveResult:
    run_id: str
    status: RunStatus
    events: list[StepEvent]
    variables: dict[str, Any]
    report: RunReport

    def final(self) -> dict[str, StepEvent]:
        return dict(self.report.steps)

    def by_status(self, status: StepStatus) -> list[str]:
        return [sid for sid, ev in self.report.steps.items() if ev.status == status]


@dataclass(slots=True)
class _RunState:
    run_id: str
    pipeline: Pipeline
    ctx: RunContext
    nodes: list[StepNode]
    started_at_utc: str
    t0_ms: int

    failed: set[str] = field(default_factory=set)
    # variable -> (branch_index, total_branches) for values downstream of a fan-out
    branches: dict[str, tuple[int, int]] = field(default_factory=dict)
    events: list[StepEvent] = field(default_factory=list)
    cancelled: bool = False

    @property
    def store(self) -> VariableStore:
        return self.ctx.store


class ProgressiveRunner:
    """
    Sequential execution with per-step status events.

    One step is active at a time, in wave order then declaration order. A
    failing step taints its outputs; every step reading a tainted name is
    skipped (and taints its own outputs) while unrelated steps keep running.
    Cancellation is checked between steps.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        gate: ContentGate | None = None,
        gate_strict: bool | None = None,
        previewer: Previewer | None = data_url_preview,
        logger: ILogger | None = None,
        events: EventSink | None = None,
        allow_duplicate_outputs: bool = False,
    ) -> None:
        self.registry = registry
        self.dispatcher = StepDispatcher(registry)
        self.gate = gate
        self.gate_strict = (
            load_settings().gate_strict if gate_strict is None else gate_strict
        )
        self.previewer = previewer
        self.logger: ILogger = logger or default_logger()
        self.events = events
        self.allow_duplicate_outputs = allow_duplicate_outputs

    async def stream(
        self,
        pipeline: Pipeline | Mapping[str, Any],
        *,
        cancel: CancelSignal | None = None,
        run_id: str | None = None,
    ) -> AsyncIterator[StepEvent]:
        """
        Yield step events in a strict total order as the run progresses.
        """
        state = self._prepare(pipeline, run_id)
        async for ev in self._execute(state, cancel):
            yield ev

    async def run(
        self,
        pipeline: Pipeline | Mapping[str, Any],
        *,
        cancel: CancelSignal | None = None,
        run_id: str | None = None,
        on_event: Callable[[StepEvent], None] | None = None,
    ) -> ProgressiveResult:
        state = self._prepare(pipeline, run_id)
        async for ev in self._execute(state, cancel):
            if on_event is not None:
                on_event(ev)

        report = self._report(state)
        return ProgressiveResult(
            run_id=state.run_id,
            status=report.status,
            events=list(state.events),
            variables=state.store.snapshot(),
            report=report,
        )

    # internals

    def _prepare(
        self, pipeline: Pipeline | Mapping[str, Any], run_id: str | None
    ) -> _RunState:
        if not isinstance(pipeline, Pipeline):
            pipeline = load_pipeline(pipeline)

        rid = run_id or new_run_id()
        store = VariableStore(pipeline.initial_variables)
        nodes = build_dependency_graph(
            pipeline.steps, allow_duplicate_outputs=self.allow_duplicate_outputs
        )
        ordered = linearize(compute_execution_waves(nodes, store.names()))

        ctx = RunContext(
            run_id=rid,
            pipeline=pipeline.display_name,
            logger=self.logger.bind(run_id=rid, pipeline=pipeline.display_name),
            store=store,
            events=self.events,
            meta={"mode": "progressive"},
        )
        return _RunState(
            run_id=rid,
            pipeline=pipeline,
            ctx=ctx,
            nodes=ordered,
            started_at_utc=utc_now_iso(),
            t0_ms=monotonic_ms(),
        )

    async def _execute(
        self, state: _RunState, cancel: CancelSignal | None
    ) -> AsyncIterator[StepEvent]:
        ctx = state.ctx
        ctx.logger.info("Pipeline starting", steps=len(state.nodes), mode="progressive")
        ctx.emit(EventType.RUN_START, steps=len(state.nodes), mode="progressive")

        for node in state.nodes:
            yield self._record(state, node, StepStatus.PENDING)

        for pos, node in enumerate(state.nodes):
            if not state.cancelled and is_cancelled(cancel):
                state.cancelled = True
                ctx.logger.info(
                    "Pipeline cancelled", remaining=len(state.nodes) - pos
                )

            if state.cancelled:
                yield self._record(
                    state,
                    node,
                    StepStatus.SKIPPED,
                    reason=SkipReason.CANCELLED.value,
                )
                continue

            blocked = next((n for n in node.inputs if n in state.failed), None)
            if blocked is not None:
                state.failed.update(node.outputs)
                ctx.step_logger(node.step_id, node.kind).info(
                    "Step skipped", upstream=blocked
                )
                yield self._record(
                    state,
                    node,
                    StepStatus.SKIPPED,
                    reason=SkipReason.UPSTREAM_FAILED.value,
                    skip_reason=blocked,
                )
                continue

            yield self._record(state, node, StepStatus.RUNNING)
            yield await self._run_step(state, node)

        self._finish(state)

    async def _run_step(self, state: _RunState, node: StepNode) -> StepEvent:
        slog = state.ctx.step_logger(node.step_id, node.kind)
        t0 = monotonic_ms()
        try:
            # no yield inside this block
            with bound(run_id=state.run_id):
                outcome = await self.dispatcher.dispatch(node, state.store)
                if node.kind in _GATED_KINDS and is_artifact(outcome.value):
                    await self._apply_gate(outcome, slog)
        except Exception as e:
            err = step_error_from_exc(e)
            state.failed.update(node.outputs)
            slog.error(
                "Step failed",
                error=err.message,
                code=err.code,
                category=err.category,
                retryable=err.retryable,
                duration_ms=monotonic_ms() - t0,
            )
            return self._record(
                state,
                node,
                StepStatus.ERROR,
                error=err.message,
                reason=err.code,
                category=err.category,
                retryable=err.retryable,
            )

        state.store.apply(outcome.writes)
        slog.debug("Step completed", out=outcome.out, duration_ms=monotonic_ms() - t0)

        fields = self._payload(outcome, slog)
        if node.kind != "fan-out":
            return self._record(state, node, StepStatus.COMPLETED, **fields)

        total = len(outcome.writes)
        ev = self._record(
            state, node, StepStatus.COMPLETED, total_branches=total, **fields
        )
        for i, name in enumerate(outcome.writes):
            state.branches[name] = (i, total)
        return ev

    async def _apply_gate(self, outcome: StepOutcome, slog: ILogger) -> None:
        if self.gate is None:
            return

        try:
            verdict = await call_provider(self.gate.check, outcome.value)
        except GatingRejectedError:
            raise
        except Exception as e:
            if self.gate_strict:
                raise GatingRejectedError(
                    f"Content check failed and strict gating is enabled: {e}"
                ) from e
            slog.warning("Content check failed, accepting result", error=str(e))
            return

        if isinstance(verdict, bool):
            verdict = GateVerdict(allowed=verdict)
        if not isinstance(verdict, GateVerdict):
            raise ProviderError(
                f"Content gate returned {type(verdict).__name__}, expected GateVerdict",
                operation="gate",
            )
        if not verdict.allowed:
            raise GatingRejectedError(
                verdict.reason or "Content rejected",
                categories=verdict.categories,
            )

    def _payload(self, outcome: StepOutcome, slog: ILogger) -> dict[str, Any]:
        value = outcome.value
        if isinstance(value, DataArtifact):
            parsed = (
                summarize_parsed(value.parsed) if value.parsed is not None else None
            )
            return {
                "data_type": value.type,
                "content": value.content,
                "parsed": parsed,
            }
        if isinstance(value, ImageArtifact) and self.previewer is not None:
            try:
                return {"preview": self.previewer(value)}
            except Exception as e:
                slog.warning("Preview failed", error=str(e))
        return {}

    def _record(
        self,
        state: _RunState,
        node: StepNode,
        status: StepStatus,
        **fields: Any,
    ) -> StepEvent:
        branch = self._branch_of(state, node)
        if branch is not None and status != StepStatus.PENDING:
            fields.setdefault("branch_index", branch[0])
            fields.setdefault("total_branches", branch[1])
            if status == StepStatus.COMPLETED:
                for out in node.outputs:
                    state.branches[out] = branch

        ev = make_step_event(
            step_id=node.step_id,
            index=node.index,
            kind=node.kind,
            status=status,
            **fields,
        )
        state.events.append(ev)
        state.ctx.record_step_event(ev)
        return ev

    @staticmethod
    def _branch_of(state: _RunState, node: StepNode) -> Optional[tuple[int, int]]:
        found = {state.branches[n] for n in node.inputs if n in state.branches}
        # A step merging several branches belongs to none of them.
        return found.pop() if len(found) == 1 else None

    def _finish(self, state: _RunState) -> None:
        report = self._report(state)
        state.ctx.emit(
            EventType.RUN_FINISH,
            status=report.status.value,
            duration_ms=report.duration_ms,
            counts=report.counts,
        )
        state.ctx.logger.info(
            "Pipeline finished",
            status=report.status.value,
            duration_ms=report.duration_ms,
            **report.counts,
        )

    def _report(self, state: _RunState) -> RunReport:
        return build_run_report(
            run_id=state.run_id,
            pipeline=state.pipeline.display_name,
            started_at_utc=state.started_at_utc,
            finished_at_utc=utc_now_iso(),
            duration_ms=monotonic_ms() - state.t0_ms,
            events=state.events,
            cancelled=state.cancelled,
            events_jsonl=str(self.events.path) if self.events is not None else None,
            meta=dict(state.ctx.meta),
        )
