"""Lifecycle event bus shared by the agent and the tool executor."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict, deque
from typing import Any, Callable

from ally_agent.types import AgentEvent, EventType

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

# Sync or async callable receiving one AgentEvent
Handler = Callable[[AgentEvent], Any]


class EventBus:
    """Fan-out of :class:`AgentEvent` values to subscribed handlers.

    A handler listens to one :class:`EventType` or to every event
    (``ALL_EVENTS``).  Delivery is concurrent; a handler that raises is
    logged and does not disturb the agent or the other handlers.  The most
    recent ``max_history`` events are kept for inspection.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._subscribers: defaultdict[EventType | str, list[Handler]] = defaultdict(list)
        self._recent: deque[AgentEvent] = deque(maxlen=max_history)

    def subscribe(self, topic: EventType | str, handler: Handler) -> Callable[[], None]:
        """Add *handler* for *topic*; the returned callable removes it again."""
        topic = self._topic(topic)
        self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return unsubscribe

    def unsubscribe(self, topic: EventType | str, handler: Handler) -> None:
        listeners = self._subscribers.get(self._topic(topic))
        if listeners and handler in listeners:
            listeners.remove(handler)

    async def emit(self, event: AgentEvent) -> None:
        self._recent.append(event)
        targets = [
            *self._subscribers.get(event.type, ()),
            *self._subscribers.get(ALL_EVENTS, ()),
        ]
        if targets:
            await asyncio.gather(*(self._deliver(h, event) for h in targets))

    async def publish(self, event_type: EventType, **data: Any) -> None:
        """Build an event from keyword data and emit it."""
        await self.emit(AgentEvent(type=event_type, data=data))

    def history(self, event_type: EventType | None = None) -> list[AgentEvent]:
        """Recent events, oldest first, optionally only those of *event_type*."""
        return [e for e in self._recent if event_type is None or e.type is event_type]

    def clear(self) -> None:
        self._subscribers.clear()
        self._recent.clear()

    @staticmethod
    def _topic(topic: EventType | str) -> EventType | str:
        if isinstance(topic, EventType):
            return topic
        try:
            return EventType(topic)
        except ValueError:
            return ALL_EVENTS if topic == ALL_EVENTS else str(topic)

    @staticmethod
    async def _deliver(handler: Handler, event: AgentEvent) -> None:
        try:
            outcome = handler(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            _logger.exception("Handler %r failed on %s", handler, event.type.value)
