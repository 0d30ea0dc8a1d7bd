"""
Delivery Service Business Logic

Facade over the state machine, assignment manager and event notifier.
Resolves callers to actors and owns the driver and intake operations.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from core.config import DispatchConfig
from core.internal_service_auth import INTERNAL_SERVICE_USER_ID

from .assignment import AssignmentManager
from .events.publishers import publish_delivery_created, publish_driver_status_changed
from .models import (
    Actor, ActorRole, AutoAssignResult, Delivery, DeliveryCreateRequest,
    DeliveryServiceStatus, DeliveryStatus, Driver, DriverCreateRequest,
    DriverStatus, GeoPoint, HistoryEvent, TrackingEntry, TrackingResponse
)
from .notifier import EventNotifier
from .protocols import (
    DeliveryNotFoundError,
    DeliveryRepositoryProtocol,
    DeliveryValidationError,
    DriverNotFoundError,
    DriverUnavailableError,
    IdentityClientProtocol,
    LocationClientProtocol,
    UnauthorizedError,
)
from .state_machine import DeliveryStateMachine

logger = logging.getLogger(__name__)


class DeliveryService:
    """
    Delivery lifecycle business logic service

    Handles intake, transitions, assignment, tracking and driver management.
    """

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        event_bus=None,
        identity_client: Optional[IdentityClientProtocol] = None,
        location_client: Optional[LocationClientProtocol] = None,
        dispatch: Optional[DispatchConfig] = None,
    ):
        """
        Initialize Delivery Service

        Args:
            repository: Delivery repository (asyncpg or in-memory)
            event_bus: NATS event bus instance (optional)
            identity_client: Resolves user ids to roles (optional)
            location_client: Supplies driver coordinates for history events (optional)
            dispatch: Assignment settings
        """
        self.repository = repository
        self.event_bus = event_bus
        self.identity_client = identity_client
        self.location_client = location_client
        self.dispatch = dispatch or DispatchConfig()

        self.notifier = EventNotifier(event_bus=event_bus)
        self.state_machine = DeliveryStateMachine(
            repository,
            self.notifier,
            location_client=location_client,
            retry_limit=self.dispatch.transition_retry_limit,
        )
        self.assignment = AssignmentManager(
            repository,
            self.state_machine,
            self.notifier,
            event_bus=event_bus,
            max_active_load=self.dispatch.max_active_load,
            system_actor_id=self.dispatch.system_actor_id,
        )

        logger.info("✅ DeliveryService initialized")

    # ==================== Actors ====================

    async def resolve_actor(self, user_id: str, is_internal_service: bool = False) -> Actor:
        """
        Map a caller's user id to an Actor.

        Verified internal service calls act as admin. Other users
        get their role from the identity service; drivers must also have an
        active driver record.
        """
        if is_internal_service:
            return Actor(actor_id=INTERNAL_SERVICE_USER_ID, role=ActorRole.ADMIN)

        role = None
        if self.identity_client is not None:
            role = await self.identity_client.get_user_role(user_id)

        if role == ActorRole.ADMIN.value:
            return Actor(actor_id=user_id, role=ActorRole.ADMIN)

        if role in (None, ActorRole.DRIVER.value):
            driver = await self.repository.get_driver_by_user(user_id)
            if driver is not None:
                if not driver.is_active:
                    raise UnauthorizedError(f"Driver {driver.driver_id} is deactivated")
                return Actor(actor_id=user_id, role=ActorRole.DRIVER, driver_id=driver.driver_id)

        raise UnauthorizedError(f"User {user_id} is not an admin or a registered driver")

    def _require_admin(self, actor: Actor, action: str):
        if not actor.is_admin:
            raise UnauthorizedError(f"Only an admin may {action}")

    def _require_self_or_admin(self, actor: Actor, driver_id: str):
        if actor.is_admin:
            return
        if actor.role == ActorRole.DRIVER and actor.driver_id == driver_id:
            return
        raise UnauthorizedError(f"Actor {actor.actor_id} may not manage driver {driver_id}")

    # ==================== Deliveries ====================

    async def create_delivery(self, request: DeliveryCreateRequest, actor: Actor) -> Delivery:
        """Intake: create a pending delivery"""
        self._require_admin(actor, "create deliveries")

        delivery = await self.repository.create_delivery(request)
        logger.info(f"Created delivery {delivery.ref_no} ({delivery.delivery_id})")

        await publish_delivery_created(self.event_bus, delivery)
        return delivery

    async def get_delivery(self, delivery_id: str, actor: Optional[Actor] = None) -> Delivery:
        delivery = await self.repository.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        if actor is not None and not actor.is_admin and delivery.driver_id != actor.driver_id:
            raise UnauthorizedError(f"Actor {actor.actor_id} is not assigned to delivery {delivery_id}")
        return delivery

    async def get_history(self, delivery_id: str, actor: Optional[Actor] = None) -> List[HistoryEvent]:
        """History events of one delivery in commit order"""
        await self.get_delivery(delivery_id, actor)
        return await self.repository.get_history(delivery_id)

    async def list_deliveries(
        self,
        status: Optional[DeliveryStatus] = None,
        driver_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        actor: Optional[Actor] = None
    ) -> List[Delivery]:
        """Drivers only ever see their own deliveries"""
        if actor is not None and not actor.is_admin:
            driver_id = actor.driver_id
        return await self.repository.list_deliveries(
            status=status, driver_id=driver_id, limit=limit, offset=offset
        )

    async def track_delivery(self, ref_no: str) -> TrackingResponse:
        """Public tracking view by reference number"""
        delivery = await self.repository.get_delivery_by_ref(ref_no.strip())
        if delivery is None:
            raise DeliveryNotFoundError(ref_no)

        history = await self.repository.get_history(delivery.delivery_id)
        timeline = [TrackingEntry(status=DeliveryStatus.PENDING, created_at=delivery.created_at)]
        timeline.extend(
            TrackingEntry(status=event.to_status, note=event.reason, created_at=event.created_at)
            for event in history
        )

        return TrackingResponse(
            ref_no=delivery.ref_no,
            status=delivery.status,
            kind=delivery.kind,
            driver_assigned=delivery.driver_id is not None,
            timeline=timeline,
            last_updated=delivery.updated_at,
        )

    # ==================== Lifecycle ====================

    async def transition(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        actor: Actor,
        reason: Optional[str] = None,
        driver_id: Optional[str] = None,
        location: Optional[GeoPoint] = None
    ) -> Delivery:
        """
        Request a status change.

        An 'assigned' request from an admin on a pending delivery also checks
        the driver the same way manual assignment does.
        """
        status = DeliveryStatus(status)
        if status == DeliveryStatus.ASSIGNED and driver_id and actor.is_admin:
            delivery = await self.get_delivery(delivery_id)
            if delivery.status == DeliveryStatus.PENDING:
                return await self.assignment.assign(
                    delivery_id, driver_id, actor, expect_pending=False
                )

        return await self.state_machine.transition(
            delivery_id,
            status,
            actor,
            reason=reason,
            driver_id=driver_id,
            location=location,
        )

    async def assign_manually(self, delivery_id: str, driver_id: str, actor: Actor) -> Delivery:
        return await self.assignment.assign_manually(delivery_id, driver_id, actor)

    async def auto_assign(
        self,
        limit: Optional[int] = None,
        actor: Optional[Actor] = None,
        stop_event=None
    ) -> AutoAssignResult:
        return await self.assignment.auto_assign(limit=limit, actor=actor, stop_event=stop_event)

    # ==================== Drivers ====================

    async def register_driver(self, request: DriverCreateRequest, actor: Actor) -> Driver:
        self._require_admin(actor, "register drivers")
        driver = await self.repository.create_driver(request)
        logger.info(f"Registered driver {driver.driver_id} for user {driver.user_id}")
        return driver

    async def get_driver(self, driver_id: str) -> Driver:
        driver = await self.repository.get_driver(driver_id)
        if driver is None:
            raise DriverNotFoundError(driver_id)
        return driver

    async def list_drivers(
        self,
        status: Optional[DriverStatus] = None,
        active_only: bool = False
    ) -> List[Driver]:
        return await self.repository.list_drivers(status=status, active_only=active_only)

    async def update_driver_status(self, driver_id: str, status: DriverStatus, actor: Actor) -> Driver:
        """
        Driver goes online or offline.

        on_delivery is managed by the assignment manager and cannot be set
        directly. Deactivated drivers stay offline.
        """
        status = DriverStatus(status)
        self._require_self_or_admin(actor, driver_id)
        driver = await self.get_driver(driver_id)

        if status == DriverStatus.ON_DELIVERY:
            raise DeliveryValidationError("Driver status 'on_delivery' is set automatically")

        if not driver.is_active and status != DriverStatus.OFFLINE:
            raise DriverUnavailableError(f"Driver {driver_id} is deactivated")

        if driver.status == status:
            return driver

        updated = await self.repository.update_driver_status(driver_id, status)
        if updated is None:
            raise DriverNotFoundError(driver_id)

        logger.info(f"Driver {driver_id}: {driver.status.value} -> {status.value} by {actor.actor_id}")
        await publish_driver_status_changed(self.event_bus, updated, old_status=driver.status)
        return updated

    async def update_driver_location(self, driver_id: str, location: GeoPoint, actor: Actor) -> Driver:
        self._require_self_or_admin(actor, driver_id)
        updated = await self.repository.update_driver_location(
            driver_id, location, datetime.now(timezone.utc)
        )
        if updated is None:
            raise DriverNotFoundError(driver_id)
        return updated

    async def record_driver_location_for_user(
        self,
        user_id: str,
        location: GeoPoint,
        seen_at: Optional[datetime] = None
    ) -> Optional[Driver]:
        """Store a location reported for a user; ignored unless the user is a driver"""
        driver = await self.repository.get_driver_by_user(user_id)
        if driver is None:
            return None
        return await self.repository.update_driver_location(
            driver.driver_id, location, seen_at or datetime.now(timezone.utc)
        )

    async def deactivate_driver(self, driver_id: str, reason: str, actor: Actor) -> Driver:
        """Soft-deactivate; the driver is set offline and keeps its history"""
        self._require_admin(actor, "deactivate drivers")
        driver = await self.get_driver(driver_id)

        updated = await self.repository.deactivate_driver(driver_id, reason)
        if updated is None:
            raise DriverNotFoundError(driver_id)

        logger.info(f"Driver {driver_id} deactivated by {actor.actor_id}: {reason}")
        await publish_driver_status_changed(
            self.event_bus, updated, old_status=driver.status, reason=reason
        )
        return updated

    # ==================== Health ====================

    async def health_check(self) -> DeliveryServiceStatus:
        database_connected = await self.repository.health_check()
        event_bus_connected = bool(self.event_bus is not None and getattr(self.event_bus, "is_connected", False))
        return DeliveryServiceStatus(
            status="operational" if database_connected else "degraded",
            database_connected=database_connected,
            event_bus_connected=event_bus_connected,
            timestamp=datetime.now(timezone.utc),
        )
