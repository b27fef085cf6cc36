"""
Publish/subscribe bus for listing cache changes.

The sync core emits an event for every cache transition, advisory change
and realtime health change; the web layer forwards them to UI sockets and
tests subscribe to assert on them. Handlers are async and a failing handler
never affects the others or the emitter.

Usage:
    from iskomarket.events import events, ListingEvent

    @events.on(ListingEvent.CACHE_REPLACED)
    async def on_replaced(data: dict):
        ...
"""
import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional

from iskomarket.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class ListingEvent(Enum):
    CACHE_REPLACED = "listings.replaced"
    LISTING_ADDED = "listings.added"
    LISTING_UPDATED = "listings.updated"
    LISTING_REMOVED = "listings.removed"
    ADVISORY_CHANGED = "listings.advisory_changed"
    REALTIME_STATE_CHANGED = "realtime.state_changed"
    REFRESH_FAILED = "listings.refresh_failed"


@dataclass
class EventMetadata:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "listing_sync"


@dataclass
class Event:
    type: ListingEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        meta = self.metadata
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": meta.event_id,
                "timestamp": meta.timestamp.isoformat(),
                "correlation_id": meta.correlation_id,
                "source": meta.source,
            },
        }


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", repr(handler))


class EventBus:
    """Async event bus with per-type and wildcard handlers and a bounded history."""

    def __init__(self, max_history: int = 100):
        # None keys the wildcard handlers
        self._handlers: Dict[Optional[ListingEvent], List[EventHandler]] = {}
        self._history: Deque[Event] = deque(maxlen=max_history)

    def on(self, event_type: Optional[ListingEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of subscribe(); no event type means every event."""

        def register(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return register

    def subscribe(self, event_type: Optional[ListingEvent], handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Optional[ListingEvent], handler: EventHandler) -> bool:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event_type]
        return True

    async def emit(self, event_type: ListingEvent, data: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(type=event_type, data=data or {})
        self._history.append(event)

        handlers = self._handlers.get(event_type, []) + self._handlers.get(None, [])
        if not handlers:
            return event

        outcomes = await asyncio.gather(*(h(event.data) for h in handlers), return_exceptions=True)
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    f"{_handler_name(handler)} failed on {event_type.value}: {outcome}",
                    extra={"event_id": event.metadata.event_id},
                )
        return event

    def get_history(self, event_type: Optional[ListingEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        matching = [e for e in self._history if event_type is None or e.type == event_type]
        return [e.to_dict() for e in matching[-limit:]]

    def clear_handlers(self) -> None:
        self._handlers.clear()

    def clear_history(self) -> None:
        self._history.clear()


events = EventBus()
