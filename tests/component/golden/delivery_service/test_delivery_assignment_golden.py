"""
Delivery Service Component Golden Tests - Assignment and Drivers

Covers:
- Manual assignment checks
- Auto-assign fairness, capacity and batch outcomes
- Driver availability kept in step with deliveries
- Driver status, location and deactivation
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from microservices.delivery_service.models import (
    DeliveryStatus, DriverCreateRequest, DriverStatus, GeoPoint
)
from microservices.delivery_service.protocols import (
    DeliveryNotFoundError,
    DeliveryNotPendingError,
    DeliveryValidationError,
    DriverNotFoundError,
    DriverUnavailableError,
    DuplicateDriverError,
    UnauthorizedError,
)
from tests.contracts.delivery.data_contract import (
    AutoAssignResultContract,
    DeliveryTestDataFactory,
)

from .mocks import driver_actor

pytestmark = [pytest.mark.component, pytest.mark.golden, pytest.mark.asyncio]


def seed_pending(mock_repo, count: int):
    """Pending deliveries with strictly increasing created_at"""
    base = datetime.now(timezone.utc) - timedelta(hours=1)
    return [
        mock_repo.set_delivery(created_at=base + timedelta(minutes=i))
        for i in range(count)
    ]


# =============================================================================
# Manual assignment
# =============================================================================

class TestManualAssignmentGolden:

    async def test_assigns_pending(self, delivery_service, mock_repo, mock_event_bus, admin):
        mock_repo.set_driver(driver_id="drv_a")
        delivery = mock_repo.set_delivery()

        result = await delivery_service.assign_manually(delivery.delivery_id, "drv_a", admin)

        assert result.status == DeliveryStatus.ASSIGNED
        assert result.driver_id == "drv_a"
        event = mock_event_bus.get_published("delivery.assigned")[0]
        assert event.data["driver_id"] == "drv_a"
        assert event.data["from_status"] == "pending"

    async def test_driver_cannot_assign(self, delivery_service, mock_repo):
        driver = mock_repo.set_driver(driver_id="drv_a")
        delivery = mock_repo.set_delivery()

        with pytest.raises(UnauthorizedError):
            await delivery_service.assign_manually(delivery.delivery_id, "drv_a", driver_actor(driver))

    async def test_unknown_delivery(self, delivery_service, mock_repo, admin):
        mock_repo.set_driver(driver_id="drv_a")

        with pytest.raises(DeliveryNotFoundError):
            await delivery_service.assign_manually(
                DeliveryTestDataFactory.make_invalid_delivery_id(), "drv_a", admin
            )

    async def test_already_assigned(self, delivery_service, mock_repo, admin):
        mock_repo.set_driver(driver_id="drv_a")
        mock_repo.set_driver(driver_id="drv_b")
        delivery = mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")

        with pytest.raises(DeliveryNotPendingError) as exc_info:
            await delivery_service.assign_manually(delivery.delivery_id, "drv_b", admin)

        assert exc_info.value.error_code == "delivery_not_pending"
        assert (await mock_repo.get_delivery(delivery.delivery_id)).driver_id == "drv_a"

    async def test_unknown_driver(self, delivery_service, mock_repo, admin):
        delivery = mock_repo.set_delivery()

        with pytest.raises(DriverNotFoundError):
            await delivery_service.assign_manually(
                delivery.delivery_id, DeliveryTestDataFactory.make_driver_id(), admin
            )

    @pytest.mark.parametrize("status,is_active", [
        (DriverStatus.OFFLINE, True),
        (DriverStatus.ON_DELIVERY, True),
        (DriverStatus.ONLINE, False),
    ])
    async def test_ineligible_driver(self, delivery_service, mock_repo, admin, status, is_active):
        mock_repo.set_driver(driver_id="drv_a", status=status, is_active=is_active)
        delivery = mock_repo.set_delivery()

        with pytest.raises(DriverUnavailableError):
            await delivery_service.assign_manually(delivery.delivery_id, "drv_a", admin)

        assert (await mock_repo.get_delivery(delivery.delivery_id)).status == DeliveryStatus.PENDING

    async def test_driver_at_capacity(self, delivery_service, mock_repo, admin):
        mock_repo.set_driver(driver_id="drv_a")
        for _ in range(5):
            mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")
        delivery = mock_repo.set_delivery()

        with pytest.raises(DriverUnavailableError) as exc_info:
            await delivery_service.assign_manually(delivery.delivery_id, "drv_a", admin)

        assert "5/5" in exc_info.value.message

    async def test_assigned_transition_from_admin_checks_driver(self, delivery_service, mock_repo, admin):
        mock_repo.set_driver(driver_id="drv_a", status=DriverStatus.OFFLINE)
        delivery = mock_repo.set_delivery()

        with pytest.raises(DriverUnavailableError):
            await delivery_service.transition(
                delivery.delivery_id, DeliveryStatus.ASSIGNED, admin, driver_id="drv_a"
            )


# =============================================================================
# Auto-assign
# =============================================================================

class TestAutoAssignGolden:

    async def test_spreads_load_evenly(self, delivery_service, mock_repo):
        for driver_id in ("drv_c", "drv_a", "drv_b"):
            mock_repo.set_driver(driver_id=driver_id)
        pending = seed_pending(mock_repo, 6)

        result = await delivery_service.auto_assign()

        AutoAssignResultContract(**result.model_dump(mode="json"))
        assert [a.delivery_id for a in result.assignments] == [d.delivery_id for d in pending]
        assert [a.driver_id for a in result.assignments] == [
            "drv_a", "drv_b", "drv_c", "drv_a", "drv_b", "drv_c"
        ]
        assert result.unmatched == []
        assert result.skipped == []
        assert result.interrupted is False

    async def test_existing_load_counts(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_a")
        mock_repo.set_driver(driver_id="drv_b")
        mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")
        mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")
        seed_pending(mock_repo, 3)

        result = await delivery_service.auto_assign()

        assert [a.driver_id for a in result.assignments] == ["drv_b", "drv_b", "drv_a"]

    async def test_finished_deliveries_do_not_count(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_a")
        mock_repo.set_driver(driver_id="drv_b")
        mock_repo.set_delivery(status=DeliveryStatus.DELIVERED, driver_id="drv_a")
        mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_b")
        seed_pending(mock_repo, 1)

        result = await delivery_service.auto_assign()

        assert result.assignments[0].driver_id == "drv_a"

    async def test_offline_and_deactivated_drivers_skipped(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_a", status=DriverStatus.OFFLINE)
        mock_repo.set_driver(driver_id="drv_b", is_active=False)
        mock_repo.set_driver(driver_id="drv_c")
        seed_pending(mock_repo, 2)

        result = await delivery_service.auto_assign()

        assert {a.driver_id for a in result.assignments} == {"drv_c"}

    async def test_capacity_leaves_deliveries_unmatched(self, mock_repo, mock_event_bus):
        from core.config import DispatchConfig
        from microservices.delivery_service.delivery_service import DeliveryService

        service = DeliveryService(
            repository=mock_repo,
            event_bus=mock_event_bus,
            dispatch=DispatchConfig(max_active_load=1),
        )
        mock_repo.set_driver(driver_id="drv_a")
        mock_repo.set_driver(driver_id="drv_b")
        pending = seed_pending(mock_repo, 3)

        result = await service.auto_assign()

        assert [a.driver_id for a in result.assignments] == ["drv_a", "drv_b"]
        assert result.unmatched == [pending[2].delivery_id]
        assert (await mock_repo.get_delivery(pending[2].delivery_id)).status == DeliveryStatus.PENDING

    async def test_no_drivers(self, delivery_service, mock_repo):
        pending = seed_pending(mock_repo, 2)

        result = await delivery_service.auto_assign()

        assert result.assignments == []
        assert result.unmatched == [d.delivery_id for d in pending]

    async def test_limit(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_a")
        pending = seed_pending(mock_repo, 3)

        result = await delivery_service.auto_assign(limit=2)

        assert [a.delivery_id for a in result.assignments] == [d.delivery_id for d in pending[:2]]
        assert (await mock_repo.get_delivery(pending[2].delivery_id)).status == DeliveryStatus.PENDING

    async def test_stale_delivery_is_skipped(self, delivery_service, mock_repo, admin):
        mock_repo.set_driver(driver_id="drv_a")
        mock_repo.set_driver(driver_id="drv_b")
        stale, fresh = seed_pending(mock_repo, 2)
        snapshot = await mock_repo.list_pending_unassigned()

        # Someone else assigns the first delivery after the batch read its list
        await delivery_service.assign_manually(stale.delivery_id, "drv_b", admin)
        mock_repo.list_pending_unassigned = AsyncMock(return_value=snapshot)

        result = await delivery_service.auto_assign()

        assert [s.delivery_id for s in result.skipped] == [stale.delivery_id]
        assert result.skipped[0].error_code == "delivery_not_pending"
        assert [a.delivery_id for a in result.assignments] == [fresh.delivery_id]
        assert (await mock_repo.get_delivery(stale.delivery_id)).driver_id == "drv_b"

    async def test_stop_event_interrupts(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_a")
        seed_pending(mock_repo, 3)
        stop_event = asyncio.Event()
        stop_event.set()

        result = await delivery_service.auto_assign(stop_event=stop_event)

        assert result.interrupted is True
        assert result.assignments == []

    async def test_driver_actor_rejected(self, delivery_service, mock_repo):
        driver = mock_repo.set_driver(driver_id="drv_a")

        with pytest.raises(UnauthorizedError):
            await delivery_service.auto_assign(actor=driver_actor(driver))

    async def test_history_actor_is_dispatcher(self, delivery_service, mock_repo, dispatch_config):
        mock_repo.set_driver(driver_id="drv_a")
        (delivery,) = seed_pending(mock_repo, 1)

        await delivery_service.auto_assign()

        event = (await mock_repo.get_history(delivery.delivery_id))[0]
        assert event.actor_id == dispatch_config.system_actor_id
        assert event.actor_role.value == "admin"


# =============================================================================
# Driver availability
# =============================================================================

class TestDriverAvailabilityGolden:

    async def test_stays_on_delivery_while_work_remains(self, delivery_service, mock_repo):
        driver = mock_repo.set_driver(driver_id="drv_a")
        first = mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")
        second = mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")
        actor = driver_actor(driver)

        for delivery in (first, second):
            await delivery_service.transition(delivery.delivery_id, DeliveryStatus.PICKED_UP, actor)
            await delivery_service.transition(delivery.delivery_id, DeliveryStatus.IN_TRANSIT, actor)
        assert (await mock_repo.get_driver("drv_a")).status == DriverStatus.ON_DELIVERY

        await delivery_service.transition(first.delivery_id, DeliveryStatus.DELIVERED, actor)
        assert (await mock_repo.get_driver("drv_a")).status == DriverStatus.ON_DELIVERY

        await delivery_service.transition(second.delivery_id, DeliveryStatus.DELIVERED, actor)
        assert (await mock_repo.get_driver("drv_a")).status == DriverStatus.ONLINE

    async def test_offline_driver_left_alone(self, delivery_service, mock_repo):
        driver = mock_repo.set_driver(driver_id="drv_a", status=DriverStatus.OFFLINE)
        delivery = mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")

        await delivery_service.transition(delivery.delivery_id, DeliveryStatus.PICKED_UP, driver_actor(driver))

        assert (await mock_repo.get_driver("drv_a")).status == DriverStatus.OFFLINE

    async def test_status_change_published(self, delivery_service, mock_repo, mock_event_bus):
        driver = mock_repo.set_driver(driver_id="drv_a")
        delivery = mock_repo.set_delivery(status=DeliveryStatus.ASSIGNED, driver_id="drv_a")

        await delivery_service.transition(delivery.delivery_id, DeliveryStatus.PICKED_UP, driver_actor(driver))

        event = mock_event_bus.get_published("delivery.driver.status_changed")[0]
        assert event.data["old_status"] == "online"
        assert event.data["new_status"] == "on_delivery"

    async def test_driver_going_offline_mid_sync_stays_offline(self, delivery_service, mock_repo, mock_event_bus):
        driver = mock_repo.set_driver(driver_id="drv_a", status=DriverStatus.ON_DELIVERY)
        delivery = mock_repo.set_delivery(status=DeliveryStatus.IN_TRANSIT, driver_id="drv_a")
        count_in_progress = mock_repo.count_in_progress

        async def goes_offline_first(driver_id):
            # Driver signs off between the availability read and the write
            await mock_repo.update_driver_status(driver_id, DriverStatus.OFFLINE)
            return await count_in_progress(driver_id)

        mock_repo.count_in_progress = goes_offline_first

        await delivery_service.transition(delivery.delivery_id, DeliveryStatus.DELIVERED, driver_actor(driver))

        assert (await mock_repo.get_driver("drv_a")).status == DriverStatus.OFFLINE
        assert mock_event_bus.get_published("delivery.driver.status_changed") == []


# =============================================================================
# Driver management
# =============================================================================

class TestDriverManagementGolden:

    async def test_register(self, delivery_service, admin):
        contract = DeliveryTestDataFactory.make_driver_request()

        driver = await delivery_service.register_driver(DriverCreateRequest(**contract.model_dump()), admin)

        assert driver.status == DriverStatus.OFFLINE
        assert driver.is_active is True
        assert driver.user_id == contract.user_id

    async def test_register_twice(self, delivery_service, admin):
        request = DriverCreateRequest(**DeliveryTestDataFactory.make_driver_request().model_dump())
        await delivery_service.register_driver(request, admin)

        with pytest.raises(DuplicateDriverError):
            await delivery_service.register_driver(request, admin)

    async def test_register_requires_admin(self, delivery_service, mock_repo):
        driver = mock_repo.set_driver()
        request = DriverCreateRequest(**DeliveryTestDataFactory.make_driver_request().model_dump())

        with pytest.raises(UnauthorizedError):
            await delivery_service.register_driver(request, driver_actor(driver))

    async def test_driver_goes_online(self, delivery_service, mock_repo, mock_event_bus):
        driver = mock_repo.set_driver(driver_id="drv_a", status=DriverStatus.OFFLINE)

        updated = await delivery_service.update_driver_status("drv_a", DriverStatus.ONLINE, driver_actor(driver))

        assert updated.status == DriverStatus.ONLINE
        mock_event_bus.assert_published("delivery.driver.status_changed")

    async def test_same_status_is_noop(self, delivery_service, mock_repo, mock_event_bus):
        driver = mock_repo.set_driver(driver_id="drv_a")

        await delivery_service.update_driver_status("drv_a", DriverStatus.ONLINE, driver_actor(driver))

        assert mock_repo.get_call_count("update_driver_status") == 0
        assert mock_event_bus.get_published() == []

    async def test_on_delivery_cannot_be_set(self, delivery_service, admin, mock_repo):
        mock_repo.set_driver(driver_id="drv_a")

        with pytest.raises(DeliveryValidationError):
            await delivery_service.update_driver_status("drv_a", DriverStatus.ON_DELIVERY, admin)

    async def test_other_driver_cannot_change_status(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_a")
        other = mock_repo.set_driver(driver_id="drv_b")

        with pytest.raises(UnauthorizedError):
            await delivery_service.update_driver_status("drv_a", DriverStatus.OFFLINE, driver_actor(other))

    async def test_deactivate(self, delivery_service, mock_repo, mock_event_bus, admin):
        mock_repo.set_driver(driver_id="drv_a")

        updated = await delivery_service.deactivate_driver("drv_a", "Licence expired", admin)

        assert updated.is_active is False
        assert updated.status == DriverStatus.OFFLINE
        assert updated.deactivation_reason == "Licence expired"
        event = mock_event_bus.get_published("delivery.driver.status_changed")[0]
        assert event.data["is_active"] is False
        assert event.data["reason"] == "Licence expired"

    async def test_deactivated_cannot_go_online(self, delivery_service, mock_repo, admin):
        mock_repo.set_driver(driver_id="drv_a", status=DriverStatus.OFFLINE, is_active=False)

        with pytest.raises(DriverUnavailableError):
            await delivery_service.update_driver_status("drv_a", DriverStatus.ONLINE, admin)

    async def test_deactivate_requires_admin(self, delivery_service, mock_repo):
        driver = mock_repo.set_driver(driver_id="drv_a")

        with pytest.raises(UnauthorizedError):
            await delivery_service.deactivate_driver("drv_a", "quit", driver_actor(driver))

    async def test_deactivate_unknown(self, delivery_service, admin):
        with pytest.raises(DriverNotFoundError):
            await delivery_service.deactivate_driver(DeliveryTestDataFactory.make_driver_id(), "quit", admin)

    async def test_update_location(self, delivery_service, mock_repo):
        driver = mock_repo.set_driver(driver_id="drv_a")
        point = GeoPoint(latitude=-6.2, longitude=106.8)

        updated = await delivery_service.update_driver_location("drv_a", point, driver_actor(driver))

        assert updated.last_location == point
        assert updated.last_seen_at is not None

    async def test_location_for_unknown_user_ignored(self, delivery_service, mock_repo):
        result = await delivery_service.record_driver_location_for_user(
            DeliveryTestDataFactory.make_user_id(), GeoPoint(latitude=1.0, longitude=2.0)
        )

        assert result is None
        assert mock_repo.get_call_count("update_driver_location") == 0

    async def test_location_for_driver_user(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_a", user_id="user_courier")
        seen_at = DeliveryTestDataFactory.make_past_timestamp(5)

        result = await delivery_service.record_driver_location_for_user(
            "user_courier", GeoPoint(latitude=1.0, longitude=2.0), seen_at=seen_at
        )

        assert result.driver_id == "drv_a"
        assert result.last_seen_at == seen_at

    async def test_list_active_online(self, delivery_service, mock_repo):
        mock_repo.set_driver(driver_id="drv_b")
        mock_repo.set_driver(driver_id="drv_a")
        mock_repo.set_driver(driver_id="drv_c", is_active=False)
        mock_repo.set_driver(driver_id="drv_d", status=DriverStatus.OFFLINE)

        drivers = await delivery_service.list_drivers(status=DriverStatus.ONLINE, active_only=True)

        assert [d.driver_id for d in drivers] == ["drv_a", "drv_b"]
