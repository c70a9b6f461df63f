"""In-process event fan-out for approval and task lifecycle events."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from pm_agent.storage.common import to_epoch_millis, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventEnvelope:
    """Broadcast envelope, `timestamp` is epoch milliseconds."""

    type: str
    timestamp: int
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: str,
        data: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> EventEnvelope:
        return cls(type=event_type, timestamp=to_epoch_millis(now or utc_now()), data=data)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "timestamp": self.timestamp, "data": self.data}


class Notifier(Protocol):
    """Fire-and-forget sink for lifecycle events."""

    def publish(self, envelope: EventEnvelope) -> None:
        """Deliver one event envelope."""


Subscriber = Callable[[EventEnvelope], None]


class EventBroadcaster:
    """Synchronous fan-out to registered subscribers.

    A failing subscriber is logged and skipped so one broken consumer never
    blocks the write path that published the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return its unsubscribe callback."""

        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, envelope: EventEnvelope) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        logger.debug("Publishing %s to %d subscriber(s)", envelope.type, len(subscribers))
        for subscriber in subscribers:
            try:
                subscriber(envelope)
            except Exception:  # noqa: BLE001
                logger.warning("Subscriber failed for event %s", envelope.type, exc_info=True)


class RecordingNotifier:
    """Notifier that keeps every envelope in memory, used by CLI and tests."""

    def __init__(self) -> None:
        self.events: list[EventEnvelope] = []

    def publish(self, envelope: EventEnvelope) -> None:
        self.events.append(envelope)

    def types(self) -> list[str]:
        return [event.type for event in self.events]
