"""
Shipment tracking

Carrier, tracking number and carrier-side status for an order. Updating a
shipment notifies the customer but never changes the order's primary status;
that stays with the state machine.
"""
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
)
from ordercore.models import OrderStatus, Shipment, ShipmentStatus, TERMINAL_STATUSES
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.order_ref import OrderRef
from ordercore.services.order_state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


class ShipmentService:
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.machine = OrderStateMachine(db, notifier=notifier)
        self.notifier = self.machine.notifier

    async def get_shipment(self, order_id: int) -> Shipment:
        result = await self.db.execute(
            select(Shipment)
            .where(Shipment.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError("Shipment for order", order_id)
        return shipment

    async def upsert_shipment(
        self,
        order_id: int,
        carrier: Optional[str] = None,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
    ) -> Shipment:
        """
        Create or update the order's shipment.

        Notifies the customer when a courier is newly assigned or changed,
        and when a tracking number first appears or changes.
        """
        carrier = (carrier or "").strip() or None
        tracking_number = (tracking_number or "").strip() or None
        if carrier is None and tracking_number is None:
            raise OrderValidationError("Provide a carrier or a tracking number", field="carrier")

        order = await self.machine.get_order(order_id)
        if OrderStatus(order.status) in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Order #{order.order_number} is {order.status}; shipping details are closed",
                current=order.status,
            )
        ref = await OrderRef.load(self.db, order)

        result = await self.db.execute(select(Shipment).where(Shipment.order_id == order_id))
        shipment = result.scalar_one_or_none()
        if shipment is None:
            shipment = Shipment(order_id=order_id, status=ShipmentStatus.PENDING.value)
            self.db.add(shipment)

        carrier_changed = carrier is not None and carrier != shipment.carrier
        tracking_changed = tracking_number is not None and tracking_number != shipment.tracking_number

        if carrier is not None:
            shipment.carrier = carrier
        if tracking_number is not None:
            shipment.tracking_number = tracking_number
        if tracking_url is not None:
            shipment.tracking_url = tracking_url.strip() or None

        await self.db.commit()
        shipment_id = shipment.id

        logger.info(
            f"Shipment for order {ref.order_number}: carrier={carrier} tracking={tracking_number}"
        )

        if carrier_changed:
            await self.notifier.notify_courier_assigned(ref, carrier)
        if tracking_changed:
            await self.notifier.notify_tracking_generated(ref, tracking_number)

        return await self._reload(shipment_id)

    async def update_status(
        self,
        order_id: int,
        status: Any,
        failure_reason: Optional[str] = None,
    ) -> Shipment:
        """
        Record a carrier-side status. A failed delivery needs a reason and
        alerts every admin.
        """
        try:
            target = ShipmentStatus(status)
        except ValueError:
            raise OrderValidationError(f"Unknown shipment status: {status!r}", field="status")

        failure_reason = (failure_reason or "").strip() or None
        if target == ShipmentStatus.FAILED and failure_reason is None:
            raise OrderValidationError("A failed delivery needs a reason", field="failure_reason")

        shipment = await self.get_shipment(order_id)
        order = await self.machine.get_order(order_id)
        if OrderStatus(order.status) in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Order #{order.order_number} is {order.status}; carrier updates are closed",
                current=order.status,
            )
        ref = await OrderRef.load(self.db, order)

        previous = shipment.status
        shipment.status = target.value
        shipment.failure_reason = failure_reason if target == ShipmentStatus.FAILED else None
        await self.db.commit()
        shipment_id = shipment.id

        logger.info(f"Shipment for order {ref.order_number}: {previous} -> {target.value}")

        if target == ShipmentStatus.FAILED:
            await self.notifier.notify_delivery_failed(ref, failure_reason)
        elif target.value != previous:
            await self.notifier.notify_shipping_status(ref, target)

        return await self._reload(shipment_id)

    async def _reload(self, shipment_id: int) -> Shipment:
        result = await self.db.execute(
            select(Shipment)
            .where(Shipment.id == shipment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
