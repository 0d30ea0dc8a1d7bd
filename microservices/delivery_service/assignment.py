"""
Assignment Manager

Binds pending deliveries to drivers, one at a time (manual) or in batches
(auto-assign), and keeps driver availability in step with the work they carry.

Every assignment goes through DeliveryStateMachine, so the driver and the
'assigned' status are written by one conditional write keyed on 'pending'.
"""

import asyncio
import logging
import weakref
from typing import Dict, List, Optional

from .models import (
    Actor, ActorRole, Assignment, AutoAssignResult, Delivery, DeliveryStatus,
    Driver, DriverStatus, HistoryEvent, SkippedDelivery
)
from .protocols import (
    DeliveryNotFoundError,
    DeliveryNotPendingError,
    DeliveryRepositoryProtocol,
    DeliveryServiceError,
    DriverNotFoundError,
    DriverUnavailableError,
    UnauthorizedError,
)
from .state_machine import DeliveryStateMachine, TERMINAL_STATUSES
from .events.publishers import publish_driver_status_changed

logger = logging.getLogger(__name__)

# Transitions that mean the driver is now carrying the parcel
_STARTS_WORK = frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT})


def select_driver(
    drivers: List[Driver],
    loads: Dict[str, int],
    max_active_load: int
) -> Optional[Driver]:
    """
    Least-loaded eligible driver, ties broken by ascending driver_id.

    Eligible means active, online and below max_active_load.
    """
    candidates = [
        d for d in drivers
        if d.is_active
        and d.status == DriverStatus.ONLINE
        and loads.get(d.driver_id, 0) < max_active_load
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda d: (loads.get(d.driver_id, 0), d.driver_id))


class AssignmentManager:
    """Manual and automatic driver assignment"""

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        state_machine: DeliveryStateMachine,
        notifier,
        event_bus=None,
        max_active_load: int = 5,
        system_actor_id: str = "system-dispatcher",
    ):
        self.repository = repository
        self.state_machine = state_machine
        self.event_bus = event_bus
        self.max_active_load = max_active_load
        self.system_actor = Actor(actor_id=system_actor_id, role=ActorRole.ADMIN)
        self._driver_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        notifier.subscribe(self.sync_driver_availability)

    def _driver_lock(self, driver_id: str) -> asyncio.Lock:
        lock = self._driver_locks.get(driver_id)
        if lock is None:
            lock = asyncio.Lock()
            self._driver_locks[driver_id] = lock
        return lock

    async def ensure_driver_eligible(self, driver_id: str) -> Driver:
        """
        Raises:
            DriverNotFoundError: unknown driver
            DriverUnavailableError: deactivated, not online, or at capacity
        """
        driver = await self.repository.get_driver(driver_id)
        if driver is None:
            raise DriverNotFoundError(driver_id)

        if not driver.is_active:
            raise DriverUnavailableError(f"Driver {driver_id} is deactivated")

        if driver.status != DriverStatus.ONLINE:
            raise DriverUnavailableError(f"Driver {driver_id} is {driver.status.value}")

        loads = await self.repository.get_active_loads()
        load = loads.get(driver_id, 0)
        if load >= self.max_active_load:
            raise DriverUnavailableError(
                f"Driver {driver_id} is at maximum load ({load}/{self.max_active_load})"
            )

        return driver

    async def assign(
        self,
        delivery_id: str,
        driver_id: str,
        actor: Actor,
        expect_pending: bool = True
    ) -> Delivery:
        """Check the driver and write the assignment under the driver's lock"""
        async with self._driver_lock(driver_id):
            await self.ensure_driver_eligible(driver_id)
            return await self.state_machine.transition(
                delivery_id,
                DeliveryStatus.ASSIGNED,
                actor,
                driver_id=driver_id,
                expect_pending=expect_pending,
            )

    async def assign_manually(self, delivery_id: str, driver_id: str, actor: Actor) -> Delivery:
        """
        Admin assigns a pending delivery to a specific driver.

        Raises:
            UnauthorizedError: actor is not an admin
            DeliveryNotFoundError: unknown delivery
            DeliveryNotPendingError: delivery already left 'pending'
            DriverNotFoundError: unknown driver
            DriverUnavailableError: driver cannot take the delivery
        """
        if not actor.is_admin:
            raise UnauthorizedError(f"Only an admin may assign deliveries (actor {actor.actor_id})")

        delivery = await self.repository.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        if delivery.status != DeliveryStatus.PENDING:
            raise DeliveryNotPendingError(delivery_id, delivery.status)

        updated = await self.assign(delivery_id, driver_id, actor)
        logger.info(f"Delivery {updated.ref_no} manually assigned to {driver_id} by {actor.actor_id}")
        return updated

    async def auto_assign(
        self,
        limit: Optional[int] = None,
        actor: Optional[Actor] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> AutoAssignResult:
        """
        Assign pending, driverless deliveries oldest first.

        Driver loads are re-read before every decision, so assignments made
        earlier in the batch (or by another process) count. A delivery that
        fails with a DeliveryServiceError is reported under skipped and the
        batch moves on. Setting stop_event ends the batch before the next
        delivery.
        """
        actor = actor or self.system_actor
        if not actor.is_admin:
            raise UnauthorizedError(f"Only an admin may run auto-assign (actor {actor.actor_id})")

        result = AutoAssignResult()
        pending = await self.repository.list_pending_unassigned(limit)

        for delivery in pending:
            if stop_event is not None and stop_event.is_set():
                result.interrupted = True
                logger.info(f"Auto-assign stopped with {len(result.assignments)} assignments made")
                break

            drivers = await self.repository.list_drivers(status=DriverStatus.ONLINE, active_only=True)
            loads = await self.repository.get_active_loads()
            driver = select_driver(drivers, loads, self.max_active_load)

            if driver is None:
                result.unmatched.append(delivery.delivery_id)
                continue

            try:
                updated = await self.assign(delivery.delivery_id, driver.driver_id, actor)
                result.assignments.append(
                    Assignment(delivery_id=updated.delivery_id, driver_id=updated.driver_id)
                )
            except DeliveryServiceError as e:
                logger.info(f"Auto-assign skipped delivery {delivery.delivery_id}: {e.message}")
                result.skipped.append(
                    SkippedDelivery(
                        delivery_id=delivery.delivery_id,
                        error_code=e.error_code,
                        message=e.message,
                    )
                )

        if pending:
            logger.info(
                f"Auto-assign batch: {len(result.assignments)} assigned, "
                f"{len(result.unmatched)} unmatched, {len(result.skipped)} skipped"
            )
        return result

    async def sync_driver_availability(self, event: HistoryEvent) -> None:
        """
        Notifier observer.

        Moves an online driver to on_delivery when work starts and back to
        online once nothing is in progress. Offline and deactivated drivers
        are left alone.
        """
        if not event.driver_id:
            return

        driver = await self.repository.get_driver(event.driver_id)
        if driver is None or not driver.is_active:
            return

        new_status = None
        if event.to_status in _STARTS_WORK and driver.status == DriverStatus.ONLINE:
            new_status = DriverStatus.ON_DELIVERY
        elif event.to_status in TERMINAL_STATUSES and driver.status == DriverStatus.ON_DELIVERY:
            if await self.repository.count_in_progress(driver.driver_id) == 0:
                new_status = DriverStatus.ONLINE

        if new_status is None:
            return

        # Conditional on the status read above, so a driver who went offline
        # in between is not brought back
        updated = await self.repository.update_driver_status(
            driver.driver_id, new_status, expected_status=driver.status
        )
        if updated is None:
            logger.info(f"Driver {driver.driver_id} changed status concurrently, left as is")
            return

        logger.info(
            f"Driver {driver.driver_id}: {driver.status.value} -> {new_status.value} "
            f"after delivery {event.ref_no} became {event.to_status.value}"
        )
        await publish_driver_status_changed(
            self.event_bus,
            updated,
            old_status=driver.status,
            reason=f"delivery {event.ref_no} {event.to_status.value}",
        )
