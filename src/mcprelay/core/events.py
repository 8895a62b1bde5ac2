"""
Event bus for lifecycle notifications.

Handlers run synchronously, in subscription order (higher priority first),
inside the emitting call. A failing handler is logged and never breaks the
emitter or the remaining handlers.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from loguru import logger


@dataclass
class Event:
    """Represents an event in the system."""

    name: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid4()))
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


# Type alias for event handlers
EventHandler = Callable[[Event], None]


class EventBus:
    """
    Synchronous event bus for component communication.

    Features:
    - Ordered, de-duplicated subscriptions
    - Wildcard subscriptions
    - Event history
    - Handler priority
    """

    def __init__(self, max_history: int = 1000):
        """Initialize the event bus."""
        self._handlers: Dict[str, List[Tuple[int, EventHandler]]] = defaultdict(list)
        self._wildcard_handlers: List[Tuple[int, EventHandler]] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def subscribe(
        self,
        event_name: str,
        handler: EventHandler,
        priority: int = 0
    ) -> None:
        """
        Subscribe to an event.

        Args:
            event_name: Event name or '*' for all events
            handler: Function called with the Event
            priority: Higher priority handlers run first
        """
        handlers = self._wildcard_handlers if event_name == "*" else self._handlers[event_name]
        if any(h == handler for _, h in handlers):
            return
        handlers.append((priority, handler))
        # sort is stable: equal priorities keep subscription order
        handlers.sort(key=lambda x: -x[0])

        logger.debug(f"Handler subscribed to '{event_name}'")

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        """Unsubscribe a handler from an event."""
        if event_name == "*":
            self._wildcard_handlers = [
                (p, h) for p, h in self._wildcard_handlers if h != handler
            ]
        else:
            self._handlers[event_name] = [
                (p, h) for p, h in self._handlers[event_name] if h != handler
            ]

    def emit(
        self,
        event_name: str,
        data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> Event:
        """
        Emit an event to all subscribers.

        Args:
            event_name: Name of the event
            data: Event data payload
            source: Source component name

        Returns:
            The emitted event
        """
        event = Event(name=event_name, data=data, source=source)

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        # Snapshot so handlers may (un)subscribe while we iterate
        handlers = [h for _, h in self._handlers.get(event_name, [])]
        handlers.extend([h for _, h in self._wildcard_handlers])

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler error for '{event_name}': {e}")

        return event

    def get_history(
        self,
        event_name: Optional[str] = None,
        limit: int = 100
    ) -> List[Event]:
        """
        Get event history.

        Args:
            event_name: Filter by event name (optional)
            limit: Maximum number of events to return

        Returns:
            List of recent events
        """
        events = self._history
        if event_name:
            events = [e for e in events if e.name == event_name]
        return events[-limit:]

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()
