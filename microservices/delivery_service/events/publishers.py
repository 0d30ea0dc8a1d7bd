"""
Delivery Service Event Publishers

Functions to publish events from delivery service
"""

import logging
from typing import Optional

from core.nats_client import Event, EventType, ServiceSource
from ..models import Delivery, Driver, DriverStatus, HistoryEvent
from .models import (
    DeliveryCreatedEvent,
    DeliveryStatusChangedEvent,
    DriverStatusChangedEvent
)

logger = logging.getLogger(__name__)


def status_event_type(status) -> EventType:
    """delivery.<status> subject for a lifecycle status"""
    return EventType(f"delivery.{status.value}")


async def publish_delivery_created(event_bus, delivery: Delivery) -> bool:
    """Publish delivery.created event"""
    if not event_bus:
        logger.warning("Event bus not available, skipping delivery.created event")
        return False

    try:
        event_data = DeliveryCreatedEvent(
            delivery_id=delivery.delivery_id,
            ref_no=delivery.ref_no,
            kind=delivery.kind.value,
            payment_type=delivery.payment_type.value,
            amount_due=float(delivery.amount_due) if delivery.amount_due is not None else None,
            priority=delivery.priority.value
        )

        event = Event(
            event_type=EventType.DELIVERY_CREATED,
            source=ServiceSource.DELIVERY_SERVICE,
            data=event_data.model_dump(mode='json')
        )

        await event_bus.publish_event(event)
        logger.info(f"Published delivery.created event for {delivery.ref_no}")
        return True

    except Exception as e:
        logger.error(f"Failed to publish delivery.created event: {e}")
        return False


async def publish_delivery_status_changed(event_bus, history_event: HistoryEvent) -> bool:
    """Publish delivery.<status> event for a committed transition"""
    if not event_bus:
        logger.debug("Event bus not available, skipping delivery status event")
        return False

    try:
        event_data = DeliveryStatusChangedEvent(
            event_id=history_event.event_id,
            delivery_id=history_event.delivery_id,
            ref_no=history_event.ref_no,
            sequence=history_event.sequence,
            from_status=history_event.from_status.value,
            to_status=history_event.to_status.value,
            reason=history_event.reason,
            actor_id=history_event.actor_id,
            actor_role=history_event.actor_role.value,
            driver_id=history_event.driver_id,
            latitude=history_event.location.latitude if history_event.location else None,
            longitude=history_event.location.longitude if history_event.location else None,
            created_at=history_event.created_at
        )

        event = Event(
            event_type=status_event_type(history_event.to_status),
            source=ServiceSource.DELIVERY_SERVICE,
            data=event_data.model_dump(mode='json'),
            subject=history_event.delivery_id
        )

        await event_bus.publish_event(event)
        logger.info(
            f"Published {event.type} event for {history_event.ref_no} (seq={history_event.sequence})"
        )
        return True

    except Exception as e:
        logger.error(f"Failed to publish delivery status event for {history_event.ref_no}: {e}")
        return False


async def publish_driver_status_changed(
    event_bus,
    driver: Driver,
    old_status: Optional[DriverStatus] = None,
    reason: Optional[str] = None
) -> bool:
    """Publish delivery.driver.status_changed event"""
    if not event_bus:
        logger.debug("Event bus not available, skipping driver status event")
        return False

    try:
        event_data = DriverStatusChangedEvent(
            driver_id=driver.driver_id,
            user_id=driver.user_id,
            old_status=old_status.value if old_status else None,
            new_status=driver.status.value,
            is_active=driver.is_active,
            reason=reason
        )

        event = Event(
            event_type=EventType.DRIVER_STATUS_CHANGED,
            source=ServiceSource.DELIVERY_SERVICE,
            data=event_data.model_dump(mode='json')
        )

        await event_bus.publish_event(event)
        logger.info(f"Published driver status event for {driver.driver_id}: {event_data.new_status}")
        return True

    except Exception as e:
        logger.error(f"Failed to publish driver status event: {e}")
        return False
