"""
Event Bus

Observational side channel for progress and activity events. Listeners are
plain callables; a failing listener is logged and never affects the publisher.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .store import iso_now

logger = logging.getLogger(__name__)


@dataclass
class Event:
    type: str
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=iso_now)


Listener = Callable[[Event], Any]


class EventBus:
    """
    Broadcast events to any number of listeners.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(lambda e: print(e.type, e.data))
        bus.publish("phase_start", {"phase": "discovery"})
    """

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def publish(self, type: str, data: Optional[dict] = None) -> Event:
        event = Event(type=type, data=data or {})
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", type)
        return event
