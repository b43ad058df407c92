from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

STATE_STARTED = "state_started"
AGENT_PROGRESS = "agent_progress"
AGENT_QUESTION = "agent_question"
LOOP_BREAKER_RETRY = "loop_breaker_retry"
STATE_COMPLETED = "state_completed"
STATE_TIMED_OUT = "state_timed_out"
STATE_BLOCKED = "state_blocked"
LOOP_DETECTED = "loop_detected"
SNAPSHOT_UPDATED = "snapshot_updated"


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    """A state change observed by the engine.

    Renderers (cards, status bars, dashboards) are pure consumers of these.
    Events never carry decisions back into the engine.
    """

    type: str
    session_id: str
    state: str
    payload: dict[str, object] = field(default_factory=dict)


EventSink = Callable[[WorkflowEvent], None]


def emit(sink: EventSink | None, event: WorkflowEvent) -> None:
    """Deliver an event; a failing consumer is logged, never propagated."""

    if sink is None:
        return
    try:
        sink(event)
    except Exception:
        logger.exception(
            "Event consumer failed",
            extra={"event_type": event.type, "session_id": event.session_id},
        )
