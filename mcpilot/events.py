"""
mcpilot Events - Typed, per-session notification channel.

Each session (and each ClientManager) owns its own ``EventBus``; there is no
process-wide emitter. Emission is fire-and-forget: synchronous handlers run
inline with their exceptions logged, coroutine handlers are scheduled as tasks
and never awaited by the emitter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CONNECTION_ESTABLISHED = "connection:established"
    CONNECTION_FAILED = "connection:failed"
    TOOLS_UPDATED = "tools:updated"
    THINKING = "llm:thinking"
    TOOL_CALL_STARTED = "tool:call_started"
    TOOL_CALL_FINISHED = "tool:call_finished"
    RESPONSE_CHUNK = "llm:response_chunk"
    RESPONSE = "llm:response"
    CONVERSATION_RESET = "conversation:reset"
    ERROR = "error"


@dataclass(frozen=True)
class Event:
    """A single notification."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Handler = Callable[[Event], Any]


class EventBus:
    """
    Notification channel scoped to one session.

    Example:
        >>> bus = EventBus(session_id="abc")
        >>> unsubscribe = bus.subscribe(EventType.RESPONSE, print)
        >>> bus.emit(EventType.RESPONSE, content="hi")
    """

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self._handlers: Dict[Optional[EventType], List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Optional[EventType], handler: Handler) -> Callable[[], None]:
        """
        Register a handler. ``event_type=None`` receives every event.

        Returns a callable that removes the subscription.
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event_type: EventType, **payload: Any) -> Event:
        event = Event(type=event_type, payload=payload, session_id=self.session_id)
        handlers = list(self._handlers.get(event_type, [])) + list(self._handlers.get(None, []))
        for handler in handlers:
            self._dispatch(handler, event)
        return event

    def _dispatch(self, handler: Handler, event: Event) -> None:
        try:
            outcome = handler(event)
        except Exception:
            logger.exception("Event handler %r failed for %s", handler, event.type.value)
            return

        if inspect.isawaitable(outcome):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No running loop: nothing can drive the coroutine.
                logger.warning("Dropped async handler for %s: no running event loop", event.type.value)
                if inspect.iscoroutine(outcome):
                    outcome.close()
                return
            task = asyncio.ensure_future(outcome, loop=loop)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed: %s", task.exception())
