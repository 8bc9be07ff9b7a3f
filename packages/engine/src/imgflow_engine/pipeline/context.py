from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from imgflow_engine.core import ILogger

from .events import EventSink, EventType, StepEvent, make_event
from .store import VariableStore


@dataclass(slots=True)
class RunContext:
    """
    State shared across steps for a single pipeline run.
    """

    run_id: str
    pipeline: str
    logger: ILogger
    store: VariableStore
    events: Optional[EventSink] = None

    # optional free-form metadata
    meta: dict[str, Any] = field(default_factory=dict)

    def step_logger(self, step_id: str, kind: str) -> ILogger:
        return self.logger.bind(step=step_id, kind=kind)

    def emit(self, event: EventType | str, *, step: str | None = None, **kw: Any) -> None:
        # Keep event chatter at debug level to leave console logs readable.
        event_value = event.value if isinstance(event, EventType) else str(event)
        self.logger.debug(event_value, event_type=event_value, step=step, **kw)
        if self.events is not None:
            self.events.emit(
                make_event(event_type=event_value, run_id=self.run_id, step=step, **kw)
            )

    def record_step_event(self, event: StepEvent) -> None:
        if self.events is not None:
            self.events.emit(
                make_event(
                    event_type=EventType.STEP,
                    run_id=self.run_id,
                    step=event.step_id,
                    **event.to_dict(),
                )
            )
