"""
EventBus -- in-process publish/subscribe.

Responsibility:
    Delivers DomainEvents synchronously to subscribers in subscription
    order.  Engines publish after their state change is flushed; the
    automation engine subscribes to receive EventDriven triggers and
    approval outcomes.

Architecture position:
    Kernel > Services -- constructed once by the composition root and
    passed to every engine; there is no module-level bus.

Failure modes:
    - EventDeliveryError (Dependency) when a subscriber raises and the bus
      was built with ``raise_errors=True`` (the default).  The subscriber's
      exception is chained.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Mapping

from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.domain.events import DomainEvent, topic_matches
from erp_kernel.domain.identity import IdGenerator, UuidGenerator
from erp_kernel.exceptions import ErpError, EventDeliveryError
from erp_kernel.logging_config import get_logger

logger = get_logger("services.event_bus")

EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """
    Synchronous topic-based publish/subscribe.

    Contract:
        ``subscribe(pattern, handler)`` registers a handler for an exact
        topic, a ``prefix.*`` pattern, or ``*``.  ``publish(topic, payload)``
        stamps the event from the injected Clock and IdGenerator and calls
        every matching handler once.

    Guarantees:
        - Handlers run in subscription order on the publishing thread.
        - The returned DomainEvent is the exact object every handler saw.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        ids: IdGenerator | None = None,
        raise_errors: bool = True,
    ):
        self._clock = clock or SystemClock()
        self._ids = ids or UuidGenerator()
        self._raise_errors = raise_errors
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._lock = threading.Lock()

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unsubscribes it."""
        entry = (pattern, handler)
        with self._lock:
            self._subscriptions.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscriptions:
                    self._subscriptions.remove(entry)

        return _unsubscribe

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return sum(1 for p, _ in self._subscriptions if topic_matches(p, topic))

    def publish(self, topic: str, payload: Mapping[str, Any] | None = None) -> DomainEvent:
        event = DomainEvent(
            event_id=self._ids.new_id(),
            topic=topic,
            occurred_at=self._clock.now(),
            payload=dict(payload or {}),
        )
        with self._lock:
            handlers = [h for p, h in self._subscriptions if topic_matches(p, topic)]

        logger.debug(
            "event_published",
            extra={"topic": topic, "event_id": event.event_id, "subscribers": len(handlers)},
        )
        self._record(event)
        for handler in handlers:
            try:
                handler(event)
            except ErpError:
                raise
            except Exception as exc:
                handler_name = getattr(handler, "__qualname__", repr(handler))
                logger.error(
                    "event_handler_failed",
                    extra={"topic": topic, "event_id": event.event_id, "handler": handler_name},
                    exc_info=True,
                )
                if self._raise_errors:
                    raise EventDeliveryError(topic, handler_name, str(exc)) from exc
        return event

    def _record(self, event: DomainEvent) -> None:
        """Hook for subclasses that retain published events."""


class RecordingEventBus(EventBus):
    """EventBus that keeps every published event, for tests and diagnostics."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.events: list[DomainEvent] = []

    def _record(self, event: DomainEvent) -> None:
        self.events.append(event)

    def topics(self) -> list[str]:
        return [e.topic for e in self.events]

    def of_topic(self, topic: str) -> list[DomainEvent]:
        return [e for e in self.events if e.topic == topic]

    def clear(self) -> None:
        self.events.clear()
