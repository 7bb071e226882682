"""
Return Workflow

Customer files a return on a delivered order; an admin approves or rejects
it, then moves it through pickup to refund.

Return status is tracked on the return row. Whether the order itself moves
to "returned" once the refund completes is decided by RETURN_REFUND_POLICY:
- keep_delivered: primary status stays "delivered"
- mark_returned: the order is moved to "returned" through the state machine
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ordercore.core.config import settings
from ordercore.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
)
from ordercore.models import (
    Order,
    OrderReturn,
    OrderStatus,
    PaymentStatus,
    ReturnStatus,
    SideEffectType,
    VALID_RETURN_TRANSITIONS,
)
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.order_ref import OrderRef
from ordercore.services.order_state_machine import OrderStateMachine
from ordercore.services.order_service import to_money
from ordercore.services.side_effects import SideEffectLedger, record_side_effect

logger = logging.getLogger(__name__)

POLICY_KEEP_DELIVERED = "keep_delivered"
POLICY_MARK_RETURNED = "mark_returned"


class ReturnWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationDispatcher] = None,
        side_effects: Optional[SideEffectLedger] = None,
        refund_policy: Optional[str] = None,
    ):
        self.db = db
        self.machine = OrderStateMachine(db, notifier=notifier, side_effects=side_effects)
        self.notifier = self.machine.notifier
        self.side_effects = self.machine.side_effects
        self.refund_policy = refund_policy or settings.RETURN_REFUND_POLICY

    async def get_return(self, return_id: int) -> OrderReturn:
        result = await self.db.execute(
            select(OrderReturn)
            .where(OrderReturn.id == return_id)
            .execution_options(populate_existing=True)
        )
        order_return = result.scalar_one_or_none()
        if order_return is None:
            raise NotFoundError("Return", return_id)
        return order_return

    async def open_return_for(self, order_id: int) -> Optional[OrderReturn]:
        result = await self.db.execute(
            select(OrderReturn).where(
                OrderReturn.order_id == order_id,
                OrderReturn.status != ReturnStatus.REJECTED.value,
            )
        )
        return result.scalar_one_or_none()

    async def list_returns(
        self,
        status: Optional[ReturnStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[OrderReturn]:
        query = select(OrderReturn).options(selectinload(OrderReturn.order))
        if status is not None:
            query = query.where(OrderReturn.status == ReturnStatus(status).value)
        query = query.order_by(OrderReturn.created_at.desc(), OrderReturn.id.desc())
        result = await self.db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all())

    async def file_return(
        self,
        order_id: int,
        user_id: int,
        reason: str,
        comment: Optional[str] = None,
    ) -> OrderReturn:
        """
        Customer asks to return a delivered order.

        Raises:
            OrderValidationError: blank reason
            NotFoundError / ForbiddenError: unknown order or not the customer's
            InvalidTransitionError: order not delivered
            ConflictError: an open return already exists
        """
        reason = (reason or "").strip()
        if not reason:
            raise OrderValidationError("Please select a reason for the return", field="reason")
        comment = (comment or "").strip() or None

        order = await self.machine.get_order(order_id)
        if order.user_id != user_id:
            raise ForbiddenError("You can only return your own orders", details={"order_id": order_id})

        if order.status != OrderStatus.DELIVERED.value:
            raise InvalidTransitionError(
                f"Order #{order.order_number} is {order.status}; only delivered orders can be returned",
                current=order.status,
                target=OrderStatus.RETURNED.value,
            )

        if await self.open_return_for(order_id) is not None:
            raise ConflictError(
                f"A return for order #{order.order_number} is already open",
                details={"order_id": order_id},
            )

        ref = await OrderRef.load(self.db, order)
        order_return = OrderReturn(
            order_id=order_id,
            user_id=user_id,
            reason=reason,
            comment=comment,
            status=ReturnStatus.PENDING.value,
        )
        self.db.add(order_return)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                f"A return for order #{ref.order_number} is already open",
                details={"order_id": order_id},
            )
        return_id = order_return.id

        logger.info(f"Return requested for order {ref.order_number} by user {user_id}: {reason}")

        await self.notifier.notify_return_requested(ref, reason)
        return await self.get_return(return_id)

    async def _claim(
        self,
        order_return: OrderReturn,
        target: ReturnStatus,
        values: Dict[str, Any],
    ) -> None:
        """Guarded status move on the return row. Rolls back and raises on a lost race."""
        current = ReturnStatus(order_return.status)
        result = await self.db.execute(
            update(OrderReturn)
            .where(OrderReturn.id == order_return.id, OrderReturn.status == current.value)
            .values(status=target.value, updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                f"Return {order_return.id} changed while it was being updated. Refresh and try again.",
                details={"return_id": order_return.id, "observed": current.value, "target": target.value},
            )

    def _validate(self, order_return: OrderReturn, target: ReturnStatus) -> None:
        current = ReturnStatus(order_return.status)
        if target not in VALID_RETURN_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move return {order_return.id} from {current.value} to {target.value}",
                current=current.value,
                target=target.value,
            )

    async def approve_return(
        self,
        return_id: int,
        admin_id: int,
        admin_notes: Optional[str] = None,
    ) -> OrderReturn:
        order_return = await self.get_return(return_id)
        self._validate(order_return, ReturnStatus.APPROVED)
        order = await self.machine.get_order(order_return.order_id)
        ref = await OrderRef.load(self.db, order)

        values: Dict[str, Any] = {"reviewed_at": datetime.now(timezone.utc), "reviewed_by": admin_id}
        if admin_notes:
            values["admin_notes"] = admin_notes.strip()
        await self._claim(order_return, ReturnStatus.APPROVED, values)
        await self.db.commit()

        logger.info(f"Return {return_id} for order {ref.order_number} approved by admin {admin_id}")

        await self.notifier.notify_return_status(ref, approved=True)
        return await self.get_return(return_id)

    async def reject_return(
        self,
        return_id: int,
        admin_id: int,
        admin_notes: Optional[str] = None,
    ) -> OrderReturn:
        order_return = await self.get_return(return_id)
        self._validate(order_return, ReturnStatus.REJECTED)
        order = await self.machine.get_order(order_return.order_id)
        ref = await OrderRef.load(self.db, order)

        values: Dict[str, Any] = {"reviewed_at": datetime.now(timezone.utc), "reviewed_by": admin_id}
        if admin_notes:
            values["admin_notes"] = admin_notes.strip()
        await self._claim(order_return, ReturnStatus.REJECTED, values)
        await self.db.commit()

        logger.info(f"Return {return_id} for order {ref.order_number} rejected by admin {admin_id}")

        await self.notifier.notify_return_status(ref, approved=False)
        return await self.get_return(return_id)

    async def advance_return(
        self,
        return_id: int,
        target_status: Any,
        admin_id: int,
        refund_amount: Any = None,
        admin_notes: Optional[str] = None,
    ) -> OrderReturn:
        """
        Move an approved return through pickup_scheduled -> picked_up ->
        refund_completed.

        refund_amount defaults to the order total and may not exceed it. A
        full refund marks payment "refunded", a smaller one
        "partially_refunded".
        """
        try:
            target = ReturnStatus(target_status)
        except ValueError:
            raise OrderValidationError(f"Unknown return status: {target_status!r}", field="status")
        if target in (ReturnStatus.APPROVED, ReturnStatus.REJECTED):
            raise OrderValidationError(
                "Use the approve or reject action to decide a return", field="status"
            )

        order_return = await self.get_return(return_id)
        self._validate(order_return, target)
        order = await self.machine.get_order(order_return.order_id)
        ref = await OrderRef.load(self.db, order)

        values: Dict[str, Any] = {}
        if admin_notes:
            values["admin_notes"] = admin_notes.strip()

        amount: Optional[Decimal] = None
        if target == ReturnStatus.REFUND_COMPLETED:
            amount = (
                to_money(refund_amount, field="refund_amount")
                if refund_amount is not None else ref.total_amount
            )
            if amount <= 0 or amount > ref.total_amount:
                raise OrderValidationError(
                    f"Refund amount must be between 0 and the order total ({ref.total_amount})",
                    field="refund_amount",
                )
            values["refund_amount"] = amount

        await self._claim(order_return, target, values)

        if amount is not None:
            payment_status = (
                PaymentStatus.REFUNDED if amount == ref.total_amount
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            await self.db.execute(
                update(Order)
                .where(Order.id == ref.id)
                .values(payment_status=payment_status.value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

        logger.info(f"Return {return_id} for order {ref.order_number} moved to {target.value} by admin {admin_id}")

        if target == ReturnStatus.REFUND_COMPLETED:
            await record_side_effect(
                self.side_effects, self.db, ref.id, SideEffectType.RETURN_REFUND,
                amount=amount,
                payload={"user_id": ref.user_id, "return_id": return_id},
            )
            await self.notifier.notify_refund_completed(ref, amount)
            if self.refund_policy == POLICY_MARK_RETURNED:
                await self._mark_order_returned(ref, admin_id)

        return await self.get_return(return_id)

    async def _mark_order_returned(self, ref: OrderRef, admin_id: int) -> None:
        try:
            await self.machine.transition(
                ref.id, OrderStatus.RETURNED, note="Return refunded", actor_id=admin_id
            )
        except (InvalidTransitionError, ConflictError) as e:
            # Refund already committed; the order's primary status is left for an admin to fix
            logger.warning(f"Order {ref.order_number} not moved to returned after refund: {e.message}")
