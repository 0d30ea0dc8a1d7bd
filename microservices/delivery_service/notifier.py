"""
Delivery Event Notifier

Fans out every committed history event to in-process observers and to the
NATS event bus. Delivery is best-effort: observer failures are logged and
never reach the caller that made the transition. Observers that miss an event
recover by re-reading the delivery and its history.
"""

import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

from .models import DeliveryStatus, HistoryEvent
from .events.publishers import publish_delivery_status_changed

logger = logging.getLogger(__name__)

EventCallback = Callable[[HistoryEvent], Awaitable[None]]


class EventNotifier:
    """Publishes accepted state changes"""

    def __init__(self, event_bus=None):
        self.event_bus = event_bus
        self._subscribers: List[EventCallback] = []
        self._status_hooks: Dict[DeliveryStatus, List[EventCallback]] = defaultdict(list)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Receive every event. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_status(self, status: DeliveryStatus, callback: EventCallback) -> Callable[[], None]:
        """
        Receive events entering one status.

        Fulfilment and inventory reconciliation hook in here for
        delivered and returned.
        """
        hooks = self._status_hooks[DeliveryStatus(status)]
        hooks.append(callback)

        def unsubscribe():
            if callback in hooks:
                hooks.remove(callback)

        return unsubscribe

    async def publish(self, event: HistoryEvent) -> None:
        """Called exactly once per committed transition, after commit"""
        callbacks = list(self._subscribers) + list(self._status_hooks.get(event.to_status, []))
        for callback in callbacks:
            try:
                await callback(event)
            except Exception as e:
                logger.error(
                    f"Observer {getattr(callback, '__name__', callback)!s} failed for "
                    f"delivery {event.ref_no} seq={event.sequence}: {e}",
                    exc_info=True
                )

        await publish_delivery_status_changed(self.event_bus, event)
