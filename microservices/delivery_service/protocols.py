"""
Delivery Service Protocols (Interfaces)

These interfaces define contracts for dependency injection.
NO import-time I/O dependencies - safe to import anywhere.
"""
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable
from datetime import datetime

from .models import (
    Actor, Delivery, DeliveryCreateRequest, DeliveryStatus, Driver,
    DriverCreateRequest, DriverStatus, GeoPoint, HistoryEvent
)


# ============================================================================
# Custom Exceptions - defined here to avoid importing repository
# ============================================================================

class DeliveryServiceError(Exception):
    """Base exception for caller-facing delivery errors"""
    error_code = "delivery_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidTransitionError(DeliveryServiceError):
    """Requested edge is not in the transition table"""
    error_code = "invalid_transition"

    def __init__(self, current: DeliveryStatus, requested: DeliveryStatus, detail: Optional[str] = None):
        self.current = current
        self.requested = requested
        message = f"Cannot transition from '{current.value}' to '{requested.value}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TerminalStateError(DeliveryServiceError):
    """Delivery is already closed"""
    error_code = "terminal_state"

    def __init__(self, delivery_id: str, status: DeliveryStatus):
        self.delivery_id = delivery_id
        self.status = status
        super().__init__(f"Delivery {delivery_id} is already {status.value}")


class MissingReasonError(DeliveryServiceError):
    """Edge requires a non-empty reason"""
    error_code = "missing_reason"

    def __init__(self, requested: DeliveryStatus):
        self.requested = requested
        super().__init__(f"A reason is required to mark a delivery as '{requested.value}'")


class UnauthorizedError(DeliveryServiceError):
    """Actor lacks the role or ownership for the action"""
    error_code = "unauthorized"


class DeliveryNotPendingError(DeliveryServiceError):
    """Assignment attempted on a delivery that is no longer pending"""
    error_code = "delivery_not_pending"

    def __init__(self, delivery_id: str, status: DeliveryStatus):
        self.delivery_id = delivery_id
        self.status = status
        super().__init__(f"Delivery {delivery_id} is not pending (current status: {status.value})")


class DriverUnavailableError(DeliveryServiceError):
    """Driver offline, deactivated or at capacity"""
    error_code = "driver_unavailable"


class NotFoundError(DeliveryServiceError):
    """Referenced entity does not exist"""
    error_code = "not_found"


class DeliveryNotFoundError(NotFoundError):
    def __init__(self, delivery_id: str):
        self.delivery_id = delivery_id
        super().__init__(f"Delivery not found: {delivery_id}")


class DriverNotFoundError(NotFoundError):
    def __init__(self, driver_id: str):
        self.driver_id = driver_id
        super().__init__(f"Driver not found: {driver_id}")


class DeliveryValidationError(DeliveryServiceError):
    """Intake or onboarding data rejected"""
    error_code = "validation_error"


class DuplicateReferenceError(DeliveryValidationError):
    def __init__(self, ref_no: str):
        self.ref_no = ref_no
        super().__init__(f"Reference number already exists: {ref_no}")


class DuplicateDriverError(DeliveryValidationError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is already registered as a driver")


class ServiceUnavailableError(DeliveryServiceError):
    """A peer service needed to answer the request is unreachable"""
    error_code = "service_unavailable"


# ============================================================================
# Repository Protocol
# ============================================================================

@runtime_checkable
class DeliveryRepositoryProtocol(Protocol):
    """
    Interface for Delivery Repository.

    apply_transition must be a single conditional write keyed on
    expected_status, committed together with the history insert.
    """

    async def create_delivery(self, request: DeliveryCreateRequest) -> Delivery:
        """Insert a pending delivery"""
        ...

    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        ...

    async def get_delivery_by_ref(self, ref_no: str) -> Optional[Delivery]:
        ...

    async def list_deliveries(
        self,
        status: Optional[DeliveryStatus] = None,
        driver_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Delivery]:
        ...

    async def list_pending_unassigned(self, limit: Optional[int] = None) -> List[Delivery]:
        """Pending deliveries without a driver, oldest first by (created_at, delivery_id)"""
        ...

    async def apply_transition(
        self,
        delivery_id: str,
        expected_status: DeliveryStatus,
        new_status: DeliveryStatus,
        actor: Actor,
        reason: Optional[str] = None,
        driver_id: Optional[str] = None,
        location: Optional[GeoPoint] = None
    ) -> Optional[Tuple[Delivery, HistoryEvent]]:
        """Returns None when the delivery is no longer in expected_status"""
        ...

    async def get_history(self, delivery_id: str) -> List[HistoryEvent]:
        ...

    async def create_driver(self, request: DriverCreateRequest) -> Driver:
        ...

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        ...

    async def get_driver_by_user(self, user_id: str) -> Optional[Driver]:
        ...

    async def list_drivers(
        self,
        status: Optional[DriverStatus] = None,
        active_only: bool = False
    ) -> List[Driver]:
        ...

    async def update_driver_status(
        self,
        driver_id: str,
        status: DriverStatus,
        expected_status: Optional[DriverStatus] = None
    ) -> Optional[Driver]:
        """Conditional on expected_status when given"""
        ...

    async def update_driver_location(
        self, driver_id: str, location: GeoPoint, seen_at: datetime
    ) -> Optional[Driver]:
        ...

    async def deactivate_driver(self, driver_id: str, reason: str) -> Optional[Driver]:
        ...

    async def get_active_loads(self) -> Dict[str, int]:
        """Non-terminal delivery count per driver (drivers with zero omitted)"""
        ...

    async def count_in_progress(self, driver_id: str) -> int:
        """Deliveries the driver is physically carrying"""
        ...

    async def health_check(self) -> bool:
        ...


# ============================================================================
# Event Bus Protocol
# ============================================================================

@runtime_checkable
class EventBusProtocol(Protocol):
    """Interface for Event Bus - no I/O imports"""

    async def publish_event(self, event: Any) -> None:
        ...


# ============================================================================
# Service Client Protocols
# ============================================================================

@runtime_checkable
class IdentityClientProtocol(Protocol):
    """Resolves a user id to a platform role"""

    async def get_user_role(self, user_id: str) -> Optional[str]:
        """Returns 'admin', 'driver' or None for unknown users"""
        ...


@runtime_checkable
class LocationClientProtocol(Protocol):
    """Supplies the latest known coordinate for a user"""

    async def get_latest_location(self, user_id: str) -> Optional[GeoPoint]:
        ...
