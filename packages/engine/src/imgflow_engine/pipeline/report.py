from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

from imgflow_engine.core import stable_json_dumps

from .events import RunStatus, StepEvent, StepStatus


@dataclass(slots=True)
class RunReport:
    run_id: str
    pipeline: str
    started_at_utc: str
    finished_at_utc: str
    status: RunStatus
    duration_ms: int

    counts: dict[str, int] = field(default_factory=dict)
    steps: dict[str, StepEvent] = field(default_factory=dict)
    events_jsonl: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "started_at_utc": self.started_at_utc,
            "finished_at_utc": self.finished_at_utc,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "counts": dict(self.counts),
            "steps": {sid: ev.to_dict() for sid, ev in self.steps.items()},
            "events_jsonl": self.events_jsonl,
            "meta": self.meta,
        }

    def write_json(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(stable_json_dumps(self.to_dict()), encoding="utf-8")


def final_statuses(events: Sequence[StepEvent]) -> dict[str, StepEvent]:
    """Last event per step id, in first-seen order."""
    last: dict[str, StepEvent] = {}
    for ev in events:
        last[ev.step_id] = ev
    return last


def summarize_status(
    final: dict[str, StepEvent], *, cancelled: bool = False
) -> RunStatus:
    if cancelled:
        return RunStatus.CANCELLED
    statuses = [ev.status for ev in final.values()]
    if all(s == StepStatus.COMPLETED for s in statuses):
        return RunStatus.SUCCESS
    if any(s == StepStatus.COMPLETED for s in statuses):
        return RunStatus.PARTIAL
    return RunStatus.FAILED


def build_run_report(
    *,
    run_id: str,
    pipeline: str,
    started_at_utc: str,
    finished_at_utc: str,
    duration_ms: int,
    events: Sequence[StepEvent],
    cancelled: bool = False,
    events_jsonl: str | None = None,
    meta: dict[str, Any] | None = None,
) -> RunReport:
    final = final_statuses(events)
    counts = Counter(ev.status.value for ev in final.values())
    return RunReport(
        run_id=run_id,
        pipeline=pipeline,
        started_at_utc=started_at_utc,
        finished_at_utc=finished_at_utc,
        status=summarize_status(final, cancelled=cancelled),
        duration_ms=duration_ms,
        counts=dict(counts),
        steps=final,
        events_jsonl=events_jsonl,
        meta=meta or {},
    )
