"""
Tests for shipment tracking.
"""
import pytest
import os

# Set test environment
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from ordercore.core.exceptions import InvalidTransitionError, NotFoundError, OrderValidationError
from ordercore.models import NotificationRole, NotificationType, OrderStatus, ShipmentStatus
from ordercore.services.shipment_service import ShipmentService


class TestUpsertShipment:
    """Test courier and tracking assignment."""

    @pytest.mark.asyncio
    async def test_assign_courier_and_tracking(self, db, make_order, people, count_notifications):
        order = await make_order(status=OrderStatus.PACKED)

        shipment = await ShipmentService(db).upsert_shipment(
            order.id, carrier="Delhivery", tracking_number="DLV123456", tracking_url="https://track.example/DLV123456"
        )

        assert shipment.carrier == "Delhivery"
        assert shipment.tracking_number == "DLV123456"
        assert shipment.status == ShipmentStatus.PENDING.value
        assert await count_notifications(people.customer_id, NotificationType.COURIER_ASSIGNED) == 1
        assert await count_notifications(people.customer_id, NotificationType.TRACKING_GENERATED) == 1

    @pytest.mark.asyncio
    async def test_unchanged_values_do_not_renotify(self, db, make_order, people, count_notifications):
        order = await make_order(status=OrderStatus.PACKED)
        service = ShipmentService(db)
        await service.upsert_shipment(order.id, carrier="Blue Dart")

        updated = await service.upsert_shipment(order.id, carrier="Blue Dart", tracking_number="BD-9")

        assert updated.carrier == "Blue Dart"
        assert await count_notifications(people.customer_id, NotificationType.COURIER_ASSIGNED) == 1
        assert await count_notifications(people.customer_id, NotificationType.TRACKING_GENERATED) == 1

    @pytest.mark.asyncio
    async def test_needs_carrier_or_tracking(self, db, make_order):
        order = await make_order()

        with pytest.raises(OrderValidationError):
            await ShipmentService(db).upsert_shipment(order.id, carrier="  ")

    @pytest.mark.asyncio
    async def test_closed_for_terminal_orders(self, db, make_order):
        order = await make_order(status=OrderStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            await ShipmentService(db).upsert_shipment(order.id, carrier="DTDC")

    @pytest.mark.asyncio
    async def test_shipment_does_not_move_order(self, db, make_order):
        order = await make_order(status=OrderStatus.PACKED)
        service = ShipmentService(db)

        await service.upsert_shipment(order.id, carrier="DTDC", tracking_number="D1")

        assert (await service.machine.get_order(order.id)).status == OrderStatus.PACKED.value


class TestShipmentStatus:
    """Test carrier-side status updates."""

    @pytest.mark.asyncio
    async def test_status_notifies_customer(self, db, make_order, people, count_notifications):
        order = await make_order(status=OrderStatus.SHIPPED)
        service = ShipmentService(db)
        await service.upsert_shipment(order.id, carrier="Xpressbees", tracking_number="XB-1")

        shipment = await service.update_status(order.id, ShipmentStatus.IN_TRANSIT)

        assert shipment.status == ShipmentStatus.IN_TRANSIT.value
        assert await count_notifications(people.customer_id, NotificationType.IN_TRANSIT) == 1

        await service.update_status(order.id, ShipmentStatus.IN_TRANSIT)
        assert await count_notifications(people.customer_id, NotificationType.IN_TRANSIT) == 1

    @pytest.mark.asyncio
    async def test_failed_delivery_alerts_admins(self, db, make_order, people, count_notifications):
        order = await make_order(status=OrderStatus.OUT_FOR_DELIVERY)
        service = ShipmentService(db)
        await service.upsert_shipment(order.id, carrier="Shadowfax")

        shipment = await service.update_status(order.id, "failed", failure_reason="Customer not available")

        assert shipment.failure_reason == "Customer not available"
        for admin_id in people.active_admin_ids:
            assert await count_notifications(
                admin_id, NotificationType.DELIVERY_FAILED, NotificationRole.ADMIN
            ) == 1

    @pytest.mark.asyncio
    async def test_cancelled_order_ignores_carrier_updates(self, db, make_order, people, count_notifications):
        order_id = (await make_order(status=OrderStatus.PACKED)).id
        service = ShipmentService(db)
        await service.upsert_shipment(order_id, carrier="Ekart", tracking_number="EK-7")
        await service.machine.transition(order_id, OrderStatus.CANCELLED, actor_id=people.admin_id)

        with pytest.raises(InvalidTransitionError):
            await service.update_status(order_id, ShipmentStatus.DELIVERED)

        assert (await service.get_shipment(order_id)).status == ShipmentStatus.PENDING.value
        assert await count_notifications(people.customer_id, NotificationType.DELIVERED) == 0

    @pytest.mark.asyncio
    async def test_failed_needs_reason(self, db, make_order):
        order = await make_order(status=OrderStatus.SHIPPED)
        service = ShipmentService(db)
        await service.upsert_shipment(order.id, carrier="Shadowfax")

        with pytest.raises(OrderValidationError):
            await service.update_status(order.id, ShipmentStatus.FAILED)

    @pytest.mark.asyncio
    async def test_no_shipment_yet(self, db, make_order):
        order = await make_order()

        with pytest.raises(NotFoundError):
            await ShipmentService(db).update_status(order.id, ShipmentStatus.PICKED_UP)

    @pytest.mark.asyncio
    async def test_unknown_status(self, db, make_order):
        order = await make_order()

        with pytest.raises(OrderValidationError):
            await ShipmentService(db).update_status(order.id, "teleported")
