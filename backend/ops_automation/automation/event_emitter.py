"""Event emitter for domain mutation events."""

import logging
from typing import Callable, List

from ops_automation.automation.models import DomainEvent

logger = logging.getLogger(__name__)


class DomainEventEmitter:
    """Event emitter broadcasting DomainEvents to listeners.

    The CRUD layer emits an event after each committed mutation of a
    business entity. Listeners are called synchronously in subscription
    order; a listener that needs to do I/O schedules its own task.
    """

    def __init__(self) -> None:
        """Initialize an empty list of listeners."""
        self._listeners: List[Callable[[DomainEvent], None]] = []

    def subscribe(self, listener: Callable[[DomainEvent], None]) -> None:
        """Subscribe a listener to domain events.

        Raises:
            ValueError: If the listener is already subscribed.
        """
        if listener in self._listeners:
            raise ValueError("Listener is already subscribed")
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[DomainEvent], None]) -> None:
        """Unsubscribe a listener.

        Raises:
            ValueError: If the listener is not subscribed.
        """
        try:
            self._listeners.remove(listener)
        except ValueError:
            raise ValueError("Listener is not subscribed") from None

    def emit(self, event: DomainEvent) -> None:
        """Emit an event to all subscribed listeners."""
        logger.debug(f"Emitting {event.event_type} for {event.entity_id}")
        for listener in list(self._listeners):
            listener(event)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
