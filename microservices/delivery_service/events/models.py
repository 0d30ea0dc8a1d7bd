"""
Delivery Service Event Models

Pydantic models for events published and consumed by delivery service
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class DeliveryCreatedEvent(BaseModel):
    """Event published when intake creates a pending delivery"""
    delivery_id: str
    ref_no: str
    kind: str
    payment_type: str
    amount_due: Optional[float] = None
    priority: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class DeliveryStatusChangedEvent(BaseModel):
    """
    Event published for every accepted transition

    NATS Subject: delivery.<to_status>
    Ordering: sequence increases by one per delivery
    """
    event_id: str
    delivery_id: str
    ref_no: str
    sequence: int
    from_status: str
    to_status: str
    reason: Optional[str] = None
    actor_id: str
    actor_role: str
    driver_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime


class DriverStatusChangedEvent(BaseModel):
    """Event published when driver availability changes"""
    driver_id: str
    user_id: str
    old_status: Optional[str] = None
    new_status: str
    is_active: bool = True
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class LocationUpdatedEventData(BaseModel):
    """
    Location updated event (published by location_service)

    NATS Subject: location.updated
    """
    user_id: str = Field(..., description="User ID")
    device_id: Optional[str] = Field(None, description="Device ID")
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


def parse_location_updated_event(data: Dict[str, Any]) -> LocationUpdatedEventData:
    """Parse location.updated event payload"""
    return LocationUpdatedEventData(**data)
