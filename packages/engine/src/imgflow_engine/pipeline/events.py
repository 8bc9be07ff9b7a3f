from __future__ import annotations

import json
import os
import platform
import socket
import threading
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

from imgflow_engine.core import stable_json_dumps, utc_now_iso


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class RunStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventType(StrEnum):
    RUN_ENV = "run.env"
    RUN_START = "run.start"
    RUN_FINISH = "run.finish"

    WAVE_START = "wave.start"
    WAVE_FINISH = "wave.finish"

    STEP = "step.status"


class SkipReason(StrEnum):
    UPSTREAM_FAILED = "upstream_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class StepEvent:
    """
    One observable status transition of a step in a progressive run.
    """

    step_id: str
    index: int
    kind: str
    status: StepStatus
    ts_utc: str

    preview: Optional[str] = None
    data_type: Optional[str] = None
    content: Optional[str] = None
    parsed: Optional[dict[str, Any]] = None

    error: Optional[str] = None
    reason: Optional[str] = None
    category: Optional[str] = None
    retryable: Optional[bool] = None
    skip_reason: Optional[str] = None

    branch_index: Optional[int] = None
    total_branches: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True, slots=True)
class Event:
    """
    Structured run-level event written to the JSONL sink.
    """

    type: str
    ts_utc: str
    run_id: str
    step: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


class EventSink:
    """
    Append-only JSONL file of events, shareable across runs.

    Each run's first record is a `run.env` line describing the process that
    executed it.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._runs: set[str] = set()

    def emit(self, event: Event) -> None:
        with self._lock:
            records = []
            if event.run_id not in self._runs:
                self._runs.add(event.run_id)
                records.append(self._env_event(event.run_id))
            records.append(event)

            with self.path.open("a", encoding="utf-8") as f:
                for rec in records:
                    f.write(stable_json_dumps(asdict(rec), indent=None))
                    f.write("\n")

    def read(self, run_id: str | None = None) -> list[dict[str, Any]]:
        """Records in file order, optionally only those of one run."""
        if not self.path.exists():
            return []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        records = [json.loads(line) for line in lines if line.strip()]
        if run_id is None:
            return records
        return [r for r in records if r.get("run_id") == run_id]

    @staticmethod
    def _env_event(run_id: str) -> Event:
        return Event(
            type=EventType.RUN_ENV.value,
            ts_utc=utc_now_iso(),
            run_id=run_id,
            data={
                "hostname": socket.gethostname(),
                "pid": os.getpid(),
                "python": platform.python_version(),
                "cwd": str(Path.cwd()),
            },
        )


def make_event(
    *,
    event_type: EventType | str,
    run_id: str,
    step: Optional[str] = None,
    **data: Any,
) -> Event:
    type_value = (
        event_type.value if isinstance(event_type, EventType) else str(event_type)
    )
    return Event(
        type=type_value,
        ts_utc=utc_now_iso(),
        run_id=run_id,
        step=step,
        data=dict(data),
    )


def make_step_event(
    *,
    step_id: str,
    index: int,
    kind: str,
    status: StepStatus,
    **fields: Any,
) -> StepEvent:
    return StepEvent(
        step_id=step_id,
        index=index,
        kind=kind,
        status=status,
        ts_utc=utc_now_iso(),
        **fields,
    )
