"""
Delivery State Machine

The single authority for validating and applying delivery status transitions.

Rules are expressed as plain data (edge table, terminal set, reason and role
requirements) plus check_transition(), which has no I/O. DeliveryStateMachine
applies an accepted transition through the repository's conditional write and
hands the resulting history event to the notifier.
"""

import asyncio
import logging
import weakref
from typing import Dict, FrozenSet, Optional

from .models import (
    Actor, ActorRole, Delivery, DeliveryKind, DeliveryStatus, GeoPoint
)
from .protocols import (
    DeliveryNotFoundError,
    DeliveryNotPendingError,
    DeliveryRepositoryProtocol,
    InvalidTransitionError,
    LocationClientProtocol,
    MissingReasonError,
    TerminalStateError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.ASSIGNED}),
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED}),
    DeliveryStatus.PICKED_UP: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED}),
    DeliveryStatus.IN_TRANSIT: frozenset({
        DeliveryStatus.DELIVERED,
        DeliveryStatus.RESCHEDULED,
        DeliveryStatus.RETURNED,
        DeliveryStatus.CANCELLED,
    }),
    DeliveryStatus.RESCHEDULED: frozenset({DeliveryStatus.IN_TRANSIT}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.RETURNED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.DELIVERED,
    DeliveryStatus.RETURNED,
    DeliveryStatus.CANCELLED,
})

# Non-terminal statuses in which the driver is carrying the parcel
IN_PROGRESS_STATUSES: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.RESCHEDULED,
})

REASON_REQUIRED: FrozenSet[DeliveryStatus] = frozenset({
    DeliveryStatus.RETURNED,
    DeliveryStatus.RESCHEDULED,
})

ADMIN_ONLY: FrozenSet[DeliveryStatus] = frozenset({DeliveryStatus.CANCELLED})

OUTBOUND_ONLY: FrozenSet[DeliveryStatus] = frozenset({DeliveryStatus.RESCHEDULED})


def is_terminal(status: DeliveryStatus) -> bool:
    return status in TERMINAL_STATUSES


def normalize_reason(reason: Optional[str]) -> Optional[str]:
    """Blank reasons count as absent"""
    if reason is None:
        return None
    reason = reason.strip()
    return reason or None


def authorize(delivery: Delivery, actor: Actor) -> None:
    """Only an admin or the delivery's assigned driver may act on it"""
    if actor.is_admin:
        return
    if (
        actor.role == ActorRole.DRIVER
        and actor.driver_id is not None
        and delivery.driver_id == actor.driver_id
    ):
        return
    raise UnauthorizedError(f"Actor {actor.actor_id} is not assigned to delivery {delivery.delivery_id}")


def check_transition(
    delivery: Delivery,
    requested: DeliveryStatus,
    actor: Actor,
    reason: Optional[str] = None,
    driver_id: Optional[str] = None,
) -> bool:
    """
    Validate a transition request against the current delivery state.

    Checks run in a fixed order: terminal state, authorization, idempotent
    no-op, edge table, role, delivery kind, reason, driver argument.

    Returns:
        True if the request is a no-op (delivery already in requested status),
        False if the transition should be applied.

    Raises:
        TerminalStateError, UnauthorizedError, InvalidTransitionError,
        MissingReasonError
    """
    current = delivery.status

    if is_terminal(current):
        raise TerminalStateError(delivery.delivery_id, current)

    authorize(delivery, actor)

    if requested == current:
        if requested == DeliveryStatus.ASSIGNED and driver_id and driver_id != delivery.driver_id:
            raise InvalidTransitionError(current, requested, "delivery is assigned to another driver")
        return True

    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, requested)

    if requested in ADMIN_ONLY and not actor.is_admin:
        raise UnauthorizedError(f"Only an admin may mark a delivery as '{requested.value}'")

    if requested in OUTBOUND_ONLY and delivery.kind != DeliveryKind.OUTBOUND:
        raise InvalidTransitionError(current, requested, f"not allowed for {delivery.kind.value} deliveries")

    if requested in REASON_REQUIRED and normalize_reason(reason) is None:
        raise MissingReasonError(requested)

    if requested == DeliveryStatus.ASSIGNED and not driver_id:
        raise InvalidTransitionError(current, requested, "a driver is required")

    return False


class DeliveryStateMachine:
    """
    Applies validated transitions.

    Every write is a conditional update keyed on the status that was
    validated. A write lost to a concurrent writer is re-read and re-validated
    up to retry_limit times. A per-delivery lock spans commit and publish so
    that events for one delivery leave this process in commit order.
    """

    def __init__(
        self,
        repository: DeliveryRepositoryProtocol,
        notifier,
        location_client: Optional[LocationClientProtocol] = None,
        retry_limit: int = 3,
    ):
        self.repository = repository
        self.notifier = notifier
        self.location_client = location_client
        self.retry_limit = max(0, retry_limit)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, delivery_id: str) -> asyncio.Lock:
        lock = self._locks.get(delivery_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[delivery_id] = lock
        return lock

    async def transition(
        self,
        delivery_id: str,
        requested: DeliveryStatus,
        actor: Actor,
        reason: Optional[str] = None,
        driver_id: Optional[str] = None,
        location: Optional[GeoPoint] = None,
        expect_pending: bool = False,
    ) -> Delivery:
        """
        Validate and apply a status transition.

        Args:
            delivery_id: Delivery to change
            requested: Target status
            actor: Resolved caller
            reason: Free-text reason (required for returned/rescheduled)
            driver_id: Driver to bind (required for assigned)
            location: Where the transition happened; looked up if omitted
            expect_pending: Assignment mode. Any non-pending delivery,
                including one that lost a race, fails with DeliveryNotPendingError.

        Returns:
            The delivery after the transition (unchanged for a no-op)
        """
        requested = DeliveryStatus(requested)
        reason = normalize_reason(reason)
        lock = self._lock_for(delivery_id)

        async with lock:
            delivery = None
            for attempt in range(self.retry_limit + 1):
                delivery = await self.repository.get_delivery(delivery_id)
                if delivery is None:
                    raise DeliveryNotFoundError(delivery_id)

                if expect_pending and delivery.status != DeliveryStatus.PENDING:
                    raise DeliveryNotPendingError(delivery_id, delivery.status)

                if check_transition(delivery, requested, actor, reason, driver_id):
                    logger.info(
                        f"Delivery {delivery.ref_no} already {requested.value}, "
                        f"ignoring repeated request from {actor.actor_id}"
                    )
                    return delivery

                if location is None:
                    location = await self._current_location(actor)

                result = await self.repository.apply_transition(
                    delivery_id=delivery_id,
                    expected_status=delivery.status,
                    new_status=requested,
                    actor=actor,
                    reason=reason,
                    driver_id=driver_id if requested == DeliveryStatus.ASSIGNED else None,
                    location=location,
                )

                if result is None:
                    logger.info(
                        f"Conditional write on delivery {delivery_id} lost "
                        f"(expected {delivery.status.value}), re-validating "
                        f"[attempt {attempt + 1}/{self.retry_limit + 1}]"
                    )
                    continue

                updated, event = result
                logger.info(
                    f"Delivery {updated.ref_no}: {event.from_status.value} -> "
                    f"{event.to_status.value} by {actor.role.value} {actor.actor_id} (seq={event.sequence})"
                )
                await self.notifier.publish(event)
                return updated

        raise InvalidTransitionError(
            delivery.status, requested, "delivery was modified concurrently, retry later"
        )

    async def _current_location(self, actor: Actor) -> Optional[GeoPoint]:
        """Best-effort coordinate for a driver actor"""
        if self.location_client is None or actor.role != ActorRole.DRIVER:
            return None
        try:
            return await self.location_client.get_latest_location(actor.actor_id)
        except Exception as e:
            logger.warning(f"Location lookup failed for {actor.actor_id}: {e}")
            return None
