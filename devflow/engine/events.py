"""Typed workflow events and observer delivery.

Every engine operation returns its result directly; events are an additional
notification channel for interested observers (dashboards, notifiers). The
engine accepts one optional callback, sync or async. A failing observer is
logged and never affects the operation that emitted the event.
"""

import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from devflow.enums import EventType
from devflow.models.domain import utcnow

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WorkflowEvent:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


EventCallback = Callable[[WorkflowEvent], Awaitable[None] | None]


class EventEmitter:
    """Builds events and hands them to the observer callback.

    Attributes:
        callback: Observer, or None when nobody listens
        recent: The last ``history_size`` events, newest last
    """

    def __init__(self, callback: EventCallback | None = None, history_size: int = 100) -> None:
        self.callback = callback
        self.recent: deque[WorkflowEvent] = deque(maxlen=history_size)

    async def emit(self, event_type: EventType, **payload: Any) -> WorkflowEvent:
        event = WorkflowEvent(type=event_type, payload=payload)
        self.recent.append(event)
        log.debug("workflow_event", event_type=str(event_type), **payload)

        if self.callback is None:
            return event

        try:
            result = self.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning("event_observer_failed", event_type=str(event_type), error=str(e), exc_info=True)

        return event
