"""
Delivery Service Event Handlers

Handles incoming events from other services via NATS
"""

import logging
from typing import Callable, Dict

from pydantic import ValidationError

from core.nats_client import Event
from ..models import GeoPoint
from .models import parse_location_updated_event

logger = logging.getLogger(__name__)

# Idempotency tracking
processed_event_ids = set()


def is_event_processed(event_id: str) -> bool:
    """Check if event has already been processed (idempotency)"""
    return event_id in processed_event_ids


def mark_event_processed(event_id: str):
    """Mark event as processed"""
    global processed_event_ids
    processed_event_ids.add(event_id)
    # Limit size to prevent memory issues
    if len(processed_event_ids) > 10000:
        processed_event_ids = set(list(processed_event_ids)[5000:])


async def handle_location_updated(event: Event, delivery_service):
    """
    Handle location.updated event

    Records the coordinate as the driver's last known location when the
    user behind the device is a registered driver.

    Event Data:
        - user_id: str
        - latitude: float
        - longitude: float
        - timestamp: str (optional)
    """
    try:
        if event.id and is_event_processed(event.id):
            logger.debug(f"Event {event.id} already processed, skipping")
            return

        try:
            event_data = parse_location_updated_event(event.data)
        except ValidationError as e:
            logger.warning(f"Malformed location.updated event {event.id}: {e}")
            if event.id:
                mark_event_processed(event.id)
            return

        driver = await delivery_service.record_driver_location_for_user(
            event_data.user_id,
            GeoPoint(latitude=event_data.latitude, longitude=event_data.longitude),
            seen_at=event_data.timestamp
        )

        if driver:
            logger.debug(f"Updated location of driver {driver.driver_id} from location.updated")

        if event.id:
            mark_event_processed(event.id)

    except Exception as e:
        # Not marked processed; the consumer naks and the event is redelivered
        logger.error(f"Failed to handle location.updated event {event.id}: {e}", exc_info=True)
        raise


def get_event_handlers(delivery_service) -> Dict[str, Callable]:
    """
    Get all event handlers for delivery service.

    Returns a dict mapping event patterns to handler functions.
    This is used by main.py to register all event subscriptions.
    """
    return {
        "location.updated": lambda event: handle_location_updated(event, delivery_service),
    }


__all__ = [
    "handle_location_updated",
    "get_event_handlers",
]
