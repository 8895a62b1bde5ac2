"""Core relay components."""

from mcprelay.core.cancellation import CancellationSignal
from mcprelay.core.events import Event, EventBus

__all__ = ["CancellationSignal", "Event", "EventBus"]
