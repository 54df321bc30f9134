"""Lifecycle event bus.

Events are fire-and-forget: a failing subscriber is logged and never
affects the execution that emitted the event.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .contracts import utcnow

logger = logging.getLogger(__name__)

WORKFLOW_STARTED = "workflow.started"
WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"
WORKFLOW_PAUSED = "workflow.paused"
WORKFLOW_RESUMED = "workflow.resumed"
WORKFLOW_CANCELLED = "workflow.cancelled"
STEP_STARTED = "step.started"
STEP_COMPLETED = "step.completed"
STEP_FAILED = "step.failed"

ALL_EVENTS = "*"


class WorkflowEvent(BaseModel):
    """Payload delivered to subscribers."""

    type: str
    execution_id: str
    tenant_id: str
    workflow_id: Optional[str] = None
    step_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


EventHandler = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


class EventBus:
    """In-process publish/subscribe for workflow and step lifecycle events."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``event_type`` (``"*"`` for every event)."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    async def emit(
        self, event_type: str, execution_id: str, tenant_id: str, **fields: Any
    ) -> WorkflowEvent:
        """Deliver an event to its subscribers and return it."""
        event = WorkflowEvent(
            type=event_type, execution_id=execution_id, tenant_id=tenant_id, **fields
        )
        handlers = [*self._handlers.get(event_type, []), *self._handlers.get(ALL_EVENTS, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning(
                    f"Event handler {getattr(handler, '__name__', handler)!r} failed for {event_type} "
                    f"execution_id={execution_id}",
                    exc_info=True,
                )
        return event
