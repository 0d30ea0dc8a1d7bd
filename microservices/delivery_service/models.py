"""
Delivery Service Data Models

Pydantic models for deliveries, drivers, lifecycle history and dispatch.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum


class DeliveryStatus(str, Enum):
    """Delivery lifecycle status"""
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    RETURNED = "returned"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class DeliveryKind(str, Enum):
    """Outbound drop-off or return pickup"""
    OUTBOUND = "outbound"
    RETURN = "return"


class PaymentType(str, Enum):
    """Payment type enumeration"""
    COD = "cod"
    PREPAID = "prepaid"


class DeliveryPriority(str, Enum):
    """Dispatch priority"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class DriverStatus(str, Enum):
    """Driver availability"""
    ONLINE = "online"
    OFFLINE = "offline"
    ON_DELIVERY = "on_delivery"


class ActorRole(str, Enum):
    """Role of the caller requesting a change"""
    DRIVER = "driver"
    ADMIN = "admin"


# Core Models

class GeoPoint(BaseModel):
    """WGS84 coordinate"""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Actor(BaseModel):
    """Resolved caller identity"""
    actor_id: str
    role: ActorRole
    driver_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


class Delivery(BaseModel):
    """Core delivery model"""
    delivery_id: str
    ref_no: str
    customer_name: str
    customer_phone: Optional[str] = None
    address: str
    location: Optional[GeoPoint] = None
    payment_type: PaymentType
    amount_due: Optional[Decimal] = None
    kind: DeliveryKind = DeliveryKind.OUTBOUND
    priority: DeliveryPriority = DeliveryPriority.NORMAL
    status: DeliveryStatus = DeliveryStatus.PENDING
    driver_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Driver(BaseModel):
    """Courier account"""
    driver_id: str
    user_id: str
    name: str
    vehicle: Optional[str] = None
    phone: Optional[str] = None
    status: DriverStatus = DriverStatus.OFFLINE
    last_location: Optional[GeoPoint] = None
    last_seen_at: Optional[datetime] = None
    is_active: bool = True
    deactivation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class HistoryEvent(BaseModel):
    """Immutable record of one accepted transition"""
    event_id: str
    delivery_id: str
    ref_no: str
    sequence: int = Field(..., ge=1, description="Per-delivery commit order")
    from_status: DeliveryStatus
    to_status: DeliveryStatus
    reason: Optional[str] = None
    actor_id: str
    actor_role: ActorRole
    driver_id: Optional[str] = None
    location: Optional[GeoPoint] = None
    created_at: datetime


# Request Models

class DeliveryCreateRequest(BaseModel):
    """Intake request for a new pending delivery"""
    ref_no: str = Field(..., min_length=1, max_length=64, description="Unique reference number")
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_phone: Optional[str] = Field(None, max_length=32)
    address: str = Field(..., min_length=1)
    location: Optional[GeoPoint] = None
    payment_type: PaymentType = PaymentType.PREPAID
    amount_due: Optional[Decimal] = Field(None, description="Required for cash-on-delivery")
    kind: DeliveryKind = DeliveryKind.OUTBOUND
    priority: DeliveryPriority = DeliveryPriority.NORMAL
    notes: Optional[str] = None

    @field_validator('ref_no', 'customer_name', 'address')
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @model_validator(mode='after')
    def validate_payment(self):
        if self.payment_type == PaymentType.COD:
            if self.amount_due is None or self.amount_due <= 0:
                raise ValueError("amount_due must be positive for cash-on-delivery")
        elif self.amount_due is not None and self.amount_due < 0:
            raise ValueError("amount_due must not be negative")
        return self


class TransitionRequest(BaseModel):
    """Request a status change"""
    status: DeliveryStatus = Field(..., description="Requested status")
    reason: Optional[str] = Field(None, max_length=1000, description="Required for returned/rescheduled")
    driver_id: Optional[str] = Field(None, description="Required when requesting 'assigned'")
    location: Optional[GeoPoint] = None


class AssignRequest(BaseModel):
    """Manual assignment request"""
    driver_id: str = Field(..., min_length=1)


class AutoAssignRequest(BaseModel):
    """Batch assignment request"""
    limit: Optional[int] = Field(None, ge=1, le=1000, description="Maximum deliveries to visit")


class DriverCreateRequest(BaseModel):
    """Driver onboarding request"""
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    vehicle: Optional[str] = None
    phone: Optional[str] = None


class DriverStatusUpdateRequest(BaseModel):
    status: DriverStatus


class DriverLocationUpdateRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class DriverDeactivateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


# Response Models

class Assignment(BaseModel):
    delivery_id: str
    driver_id: str


class SkippedDelivery(BaseModel):
    """Delivery left untouched by a batch because of a recoverable error"""
    delivery_id: str
    error_code: str
    message: str


class AutoAssignResult(BaseModel):
    """Outcome of one auto-assign batch"""
    assignments: List[Assignment] = []
    unmatched: List[str] = Field(default_factory=list, description="Left pending, no eligible driver")
    skipped: List[SkippedDelivery] = []
    interrupted: bool = False


class DeliveryListResponse(BaseModel):
    deliveries: List[Delivery]
    count: int
    limit: int
    offset: int


class DeliveryHistoryResponse(BaseModel):
    delivery_id: str
    events: List[HistoryEvent]
    count: int


class TrackingEntry(BaseModel):
    status: DeliveryStatus
    note: Optional[str] = None
    created_at: datetime


class TrackingResponse(BaseModel):
    """Public tracking view (no customer contact data)"""
    ref_no: str
    status: DeliveryStatus
    kind: DeliveryKind
    driver_assigned: bool
    timeline: List[TrackingEntry]
    last_updated: datetime


class DriverListResponse(BaseModel):
    drivers: List[Driver]
    count: int


class DeliveryServiceStatus(BaseModel):
    """Service status response"""
    service: str = "delivery_service"
    status: str = "operational"
    database_connected: bool
    event_bus_connected: bool = False
    timestamp: datetime
