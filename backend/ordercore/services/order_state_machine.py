"""
Order State Machine

Single authority for primary-status changes.

Every transition:
1. Validates the target against VALID_ORDER_TRANSITIONS
2. Issues a guarded UPDATE (WHERE status = <observed>) so a concurrent writer
   makes it fail with ConflictError instead of silently overwriting
3. Appends a ledger entry in the same transaction
4. After commit, dispatches notifications and records side effects
   (loyalty credit, refund queue, inventory release). Those are best-effort.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Collection, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ordercore.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
)
from ordercore.models import (
    Order,
    OrderStatus,
    CancellationStatus,
    TERMINAL_STATUSES,
    CUSTOMER_CONFIRMABLE_STATUSES,
    STAGE_TIMESTAMPS,
    VALID_ORDER_TRANSITIONS,
)
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.order_ref import OrderRef
from ordercore.services.side_effects import (
    DatabaseSideEffectLedger,
    SideEffectLedger,
    record_cancellation_effects,
    record_delivery_effects,
)
from ordercore.services.status_ledger import OrderStatusLedger

logger = logging.getLogger(__name__)


def coerce_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise OrderValidationError(f"Unknown order status: {value!r}", field="status")


class OrderStateMachine:
    """Validates and applies order status transitions."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationDispatcher] = None,
        side_effects: Optional[SideEffectLedger] = None,
    ):
        self.db = db
        self.notifier = notifier or NotificationDispatcher(db)
        self.side_effects = side_effects or DatabaseSideEffectLedger(db)
        self.ledger = OrderStatusLedger(db)

    async def get_order(self, order_id: int, with_items: bool = False) -> Order:
        """Load an order, always from the database rather than the identity map."""
        query = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if with_items:
            query = query.options(selectinload(Order.items), selectinload(Order.shipment))
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    @staticmethod
    def allowed_targets(order: Order) -> List[OrderStatus]:
        """Statuses an admin may move this order to right now."""
        targets = list(VALID_ORDER_TRANSITIONS[OrderStatus(order.status)])
        if order.cancellation_status == CancellationStatus.REQUESTED.value:
            # A pending customer request is decided through the cancellation workflow
            targets = [t for t in targets if t != OrderStatus.CANCELLED]
        return targets

    def validate_transition(self, order: Order, target: OrderStatus) -> None:
        current = OrderStatus(order.status)

        if current in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Order #{order.order_number} is already {current.value} and cannot change status",
                current=current.value,
                target=target.value,
            )

        if target == OrderStatus.CANCELLED and order.cancellation_status == CancellationStatus.REQUESTED.value:
            raise InvalidTransitionError(
                f"Order #{order.order_number} has a pending cancellation request. "
                f"Approve or reject it instead.",
                current=current.value,
                target=target.value,
            )

        if target not in VALID_ORDER_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move order #{order.order_number} from {current.value} to {target.value}",
                current=current.value,
                target=target.value,
            )

        if target == OrderStatus.SHIPPED:
            missing = order.missing_address_fields()
            if missing:
                raise OrderValidationError(
                    f"Order #{order.order_number} cannot ship without a complete address "
                    f"(missing: {', '.join(missing)})",
                    field="shipping_address",
                    details={"missing": missing},
                )

    async def apply_guarded(
        self,
        order: Order,
        target: OrderStatus,
        *,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
        allowed_from: Optional[Collection[OrderStatus]] = None,
        guards: Iterable[Any] = (),
        values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Guarded UPDATE plus ledger entry inside the caller's transaction.

        Matches on the status the caller observed, or on any of allowed_from
        when given. Returns False when no row matched; the caller decides
        whether to roll back. Does not commit.
        """
        now = datetime.now(timezone.utc)
        changes: Dict[str, Any] = {"status": target.value, "updated_at": now}
        stamp = STAGE_TIMESTAMPS.get(target)
        if stamp:
            changes[stamp] = now
        if values:
            changes.update(values)

        if allowed_from is not None:
            status_guard = Order.status.in_([OrderStatus(s).value for s in allowed_from])
        else:
            status_guard = Order.status == order.status

        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, status_guard, *guards)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        self.ledger.append(order.id, target, note=note, actor_id=actor_id)
        return True

    async def transition(
        self,
        order_id: int,
        target_status: Any,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> Order:
        """
        Admin-driven transition.

        Raises:
            NotFoundError, InvalidTransitionError, OrderValidationError,
            ConflictError when the order changed underneath us
        """
        target = coerce_status(target_status)
        order = await self.get_order(order_id)
        self.validate_transition(order, target)

        previous = order.status
        ref = await OrderRef.load(self.db, order)

        guards = []
        if target == OrderStatus.CANCELLED:
            guards.append(Order.cancellation_status != CancellationStatus.REQUESTED.value)

        applied = await self.apply_guarded(order, target, note=note, actor_id=actor_id, guards=guards)
        if not applied:
            await self.db.rollback()
            raise ConflictError(
                f"Order #{ref.order_number} changed while it was being updated. Refresh and try again.",
                details={"order_id": order_id, "observed": previous, "target": target.value},
            )
        await self.db.commit()

        logger.info(
            f"Order {ref.order_number}: {previous} -> {target.value}"
            + (f" by {actor_id}" if actor_id else "")
        )

        await self.after_transition(ref, target)
        return await self.get_order(order_id, with_items=True)

    async def confirm_delivery(self, order_id: int, actor_user_id: int) -> Order:
        """Customer confirms receipt of a shipped or out-for-delivery order."""
        order = await self.get_order(order_id)
        if order.user_id != actor_user_id:
            raise ForbiddenError(
                "You can only confirm delivery of your own orders",
                details={"order_id": order_id},
            )

        current = OrderStatus(order.status)
        if current not in CUSTOMER_CONFIRMABLE_STATUSES:
            raise InvalidTransitionError(
                f"Order #{order.order_number} is {current.value}; only shipped orders can be confirmed as delivered",
                current=current.value,
                target=OrderStatus.DELIVERED.value,
            )

        ref = await OrderRef.load(self.db, order)
        applied = await self.apply_guarded(
            order,
            OrderStatus.DELIVERED,
            note="Delivery confirmed by customer",
            actor_id=actor_user_id,
            guards=[Order.user_id == actor_user_id],
        )
        if not applied:
            await self.db.rollback()
            raise ConflictError(
                f"Order #{ref.order_number} changed while it was being updated. Refresh and try again.",
                details={"order_id": order_id, "observed": current.value},
            )
        await self.db.commit()

        logger.info(f"Order {ref.order_number}: {current.value} -> delivered (confirmed by customer)")

        await self.after_transition(ref, OrderStatus.DELIVERED)
        return await self.get_order(order_id, with_items=True)

    async def after_transition(self, ref: OrderRef, target: OrderStatus) -> None:
        """Post-commit hooks for a transition made through this machine."""
        await self.notifier.notify_status_change(ref, target)

        if target == OrderStatus.DELIVERED:
            await record_delivery_effects(self.side_effects, self.db, ref)
            await self.notifier.notify_commission_earned(ref)
        elif target == OrderStatus.CANCELLED:
            await self.notifier.notify_order_cancelled_admins(ref, by_customer=False)
            await record_cancellation_effects(self.side_effects, self.db, ref)
            await self.notifier.notify_commission_rejected(ref)
        elif target == OrderStatus.RETURNED:
            await self.notifier.notify_commission_rejected(ref)
