"""
In-process event bus.

The resource service and the CDS endpoint publish here; a WebSocket or SSE
broadcaster subscribes.  Publishing is synchronous and a failing subscriber
is logged and skipped, so a broken transport never fails a write.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from app.utils import get_logger

logger = get_logger(__name__)

RESOURCE_CREATED = "resource.created"
RESOURCE_UPDATED = "resource.updated"
RESOURCE_DELETED = "resource.deleted"
CDS_CARDS = "cds.cards"


@dataclass
class Event:
    name: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.name,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


Subscriber = Callable[[Event], None]


class EventBus:
    """Topic -> subscribers. ``"*"`` receives every event."""

    WILDCARD = "*"

    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, name: str, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(name, []).append(subscriber)

    def unsubscribe(self, name: str, subscriber: Subscriber) -> None:
        with self._lock:
            listeners = self._subscribers.get(name, [])
            if subscriber in listeners:
                listeners.remove(subscriber)

    def publish(self, name: str, payload: Dict[str, Any]) -> Event:
        event = Event(name=name, payload=payload)
        with self._lock:
            listeners = list(self._subscribers.get(name, [])) + list(
                self._subscribers.get(self.WILDCARD, [])
            )
        for subscriber in listeners:
            try:
                subscriber(event)
            except Exception as exc:
                logger.error(f"EventBus: subscriber for {name} raised {exc}", exc_info=True)
        return event
