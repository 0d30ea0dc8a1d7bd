"""
Delivery Service Events Module

Exports all event-related functionality for delivery service
"""

from .models import (
    DeliveryCreatedEvent,
    DeliveryStatusChangedEvent,
    DriverStatusChangedEvent,
    LocationUpdatedEventData
)

from .publishers import (
    publish_delivery_created,
    publish_delivery_status_changed,
    publish_driver_status_changed
)

from .handlers import get_event_handlers

__all__ = [
    # Event Models
    "DeliveryCreatedEvent",
    "DeliveryStatusChangedEvent",
    "DriverStatusChangedEvent",
    "LocationUpdatedEventData",
    # Publishers
    "publish_delivery_created",
    "publish_delivery_status_changed",
    "publish_driver_status_changed",
    # Handlers
    "get_event_handlers"
]
