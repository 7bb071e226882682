"""
Notification Dispatcher

Creates in-app notifications for customers, admins and affiliates.

Rules:
- One row per recipient; admin broadcasts fan out to the admin roster as it
  stands at dispatch time
- Notifications are written after the business change has committed
- A failed notification never fails the business operation: the safe_*
  entry points log and absorb the error
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.exceptions import NotFoundError, RecipientNotFoundError
from ordercore.models import (
    AdminUser,
    Notification,
    NotificationModule,
    NotificationPriority,
    NotificationRole,
    NotificationStatus,
    NotificationType,
    OrderStatus,
    ShipmentStatus,
    User,
)
from ordercore.services.order_ref import OrderRef

logger = logging.getLogger(__name__)

CUSTOMER_ORDERS_URL = "/account?tab=orders"
ADMIN_ORDERS_URL = "/admin/orders"
ADMIN_CANCELLATIONS_URL = "/admin/orders?tab=cancellations"
ADMIN_RETURNS_URL = "/admin/orders?tab=returns"
AFFILIATE_DASHBOARD_URL = "/affiliate-dashboard"

# Customer-facing copy per primary status: (type, title, message template)
STATUS_MESSAGES: Dict[OrderStatus, Tuple[NotificationType, str, str]] = {
    OrderStatus.CONFIRMED: (
        NotificationType.ORDER_CONFIRMED, "Order Confirmed",
        "Your order #{number} has been confirmed.",
    ),
    OrderStatus.PROCESSING: (
        NotificationType.ORDER_PROCESSING, "Order Processing",
        "Your order #{number} is being processed.",
    ),
    OrderStatus.PACKED: (
        NotificationType.ORDER_PACKED, "Order Packed",
        "Your order #{number} has been packed and will ship soon.",
    ),
    OrderStatus.SHIPPED: (
        NotificationType.ORDER_SHIPPED, "Order Shipped",
        "Your order #{number} has been shipped.",
    ),
    OrderStatus.OUT_FOR_DELIVERY: (
        NotificationType.ORDER_OUT_FOR_DELIVERY, "Out for Delivery",
        "Your order #{number} is out for delivery today.",
    ),
    OrderStatus.DELIVERED: (
        NotificationType.ORDER_DELIVERED, "Order Delivered",
        "Your order #{number} has been delivered.",
    ),
    OrderStatus.CANCELLED: (
        NotificationType.ORDER_CANCELLED, "Order Cancelled",
        "Your order #{number} has been cancelled.",
    ),
    OrderStatus.RETURNED: (
        NotificationType.ORDER_RETURNED, "Order Returned",
        "Your order #{number} has been returned.",
    ),
}

SHIPPING_MESSAGES: Dict[ShipmentStatus, Tuple[NotificationType, str, str]] = {
    ShipmentStatus.PICKED_UP: (
        NotificationType.PICKED_UP, "Package Picked Up",
        "Your order #{number} has been picked up by courier.",
    ),
    ShipmentStatus.IN_TRANSIT: (
        NotificationType.IN_TRANSIT, "Package In Transit",
        "Your order #{number} is on the way.",
    ),
    ShipmentStatus.OUT_FOR_DELIVERY: (
        NotificationType.OUT_FOR_DELIVERY, "Out for Delivery",
        "Your order #{number} is out for delivery today.",
    ),
    ShipmentStatus.DELIVERED: (
        NotificationType.DELIVERED, "Package Delivered",
        "Your order #{number} has been delivered.",
    ),
}

HIGH_PRIORITY_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED}


def _money(amount: Optional[Decimal]) -> str:
    return f"₹{Decimal(amount or 0):.2f}"


class NotificationDispatcher:
    """
    Writes notification rows.

    dispatch() and broadcast_to_admins() raise; the safe_* variants are what
    workflows call after their own commit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Core ====================

    async def dispatch(
        self,
        recipient_user_id: int,
        role: NotificationRole,
        module: NotificationModule,
        notification_type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        reference_id: Optional[Any] = None,
        reference_type: Optional[str] = None,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """Create one unread notification and commit it."""
        exists = await self.db.scalar(select(User.id).where(User.id == recipient_user_id))
        if exists is None:
            raise RecipientNotFoundError(
                f"Notification recipient {recipient_user_id} does not exist",
                details={"user_id": recipient_user_id, "type": NotificationType(notification_type).value},
            )

        notification = Notification(
            user_id=recipient_user_id,
            role=NotificationRole(role).value,
            module=NotificationModule(module).value,
            type=NotificationType(notification_type).value,
            title=title,
            message=message,
            status=NotificationStatus.UNREAD.value,
            priority=NotificationPriority(priority).value,
            reference_id=str(reference_id) if reference_id is not None else None,
            reference_type=reference_type,
            action_url=action_url,
            action_label=action_label,
            extra_data=metadata,
        )
        self.db.add(notification)
        await self.db.commit()

        logger.debug(
            f"Notification {notification.type} -> user {recipient_user_id} ({notification.role})"
        )
        return notification

    async def active_admin_ids(self) -> List[int]:
        result = await self.db.execute(
            select(AdminUser.user_id)
            .where(AdminUser.is_active.is_(True))
            .order_by(AdminUser.id)
        )
        return list(result.scalars().all())

    async def broadcast_to_admins(self, **fields) -> List[Notification]:
        """One notification per active admin. Takes dispatch() fields minus recipient and role."""
        sent = []
        for admin_id in await self.active_admin_ids():
            sent.append(await self.dispatch(admin_id, NotificationRole.ADMIN, **fields))
        return sent

    async def safe_dispatch(self, recipient_user_id: int, role: NotificationRole, **fields) -> Optional[Notification]:
        """dispatch() that logs and absorbs failures. Returns None on failure."""
        try:
            return await self.dispatch(recipient_user_id, role, **fields)
        except RecipientNotFoundError as e:
            logger.warning(f"Skipping notification: {e.message}")
            return None
        except Exception as e:
            await self.db.rollback()
            logger.error(
                f"Failed to create {fields.get('notification_type')} notification "
                f"for user {recipient_user_id}: {e}",
                exc_info=True,
            )
            return None

    async def safe_broadcast(self, **fields) -> int:
        """Broadcast with per-admin isolation. Returns how many were delivered."""
        try:
            admin_ids = await self.active_admin_ids()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to load admin roster for broadcast: {e}", exc_info=True)
            return 0

        delivered = 0
        for admin_id in admin_ids:
            if await self.safe_dispatch(admin_id, NotificationRole.ADMIN, **fields) is not None:
                delivered += 1
        return delivered

    # ==================== Inbox ====================

    async def list_for_user(
        self,
        user_id: int,
        role: Optional[NotificationRole] = None,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
    ) -> List[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if role is not None:
            query = query.where(Notification.role == NotificationRole(role).value)
        if status is not None:
            query = query.where(Notification.status == NotificationStatus(status).value)
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def unread_count(self, user_id: int, role: Optional[NotificationRole] = None) -> int:
        query = select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.status == NotificationStatus.UNREAD.value,
        )
        if role is not None:
            query = query.where(Notification.role == NotificationRole(role).value)
        return await self.db.scalar(query) or 0

    async def mark_read(self, notification_id: int, user_id: Optional[int] = None) -> bool:
        """
        Flip one notification to read.

        Returns False if it was already read. With user_id, another user's
        notification is reported as not found.
        """
        owner = await self.db.scalar(
            select(Notification.user_id).where(Notification.id == notification_id)
        )
        if owner is None or (user_id is not None and owner != user_id):
            raise NotFoundError("Notification", notification_id)

        result = await self.db.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.status == NotificationStatus.UNREAD.value,
            )
            .values(status=NotificationStatus.READ.value, read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_all_read(self, user_id: int, role: Optional[NotificationRole] = None) -> int:
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.status == NotificationStatus.UNREAD.value,
        )
        if role is not None:
            stmt = stmt.where(Notification.role == NotificationRole(role).value)
        result = await self.db.execute(
            stmt
            .values(status=NotificationStatus.READ.value, read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    # ==================== Order notifications ====================

    async def notify_order_placed(self, order: OrderRef) -> None:
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.ORDER,
            notification_type=NotificationType.ORDER_PLACED,
            title="Order Placed Successfully",
            message=f"Your order #{order.order_number} has been placed successfully.",
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="View Order",
        )
        await self.safe_broadcast(
            module=NotificationModule.ORDER,
            notification_type=NotificationType.ORDER_PLACED,
            title="New Order Received",
            message=f"New order #{order.order_number} has been placed.",
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=ADMIN_ORDERS_URL,
            action_label="View Orders",
        )

    async def notify_status_change(self, order: OrderRef, status: OrderStatus) -> None:
        status = OrderStatus(status)
        template = STATUS_MESSAGES.get(status)
        if template is None:
            return
        notification_type, title, message = template
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.ORDER,
            notification_type=notification_type,
            title=title,
            message=message.format(number=order.order_number),
            priority=(
                NotificationPriority.HIGH if status in HIGH_PRIORITY_STATUSES
                else NotificationPriority.MEDIUM
            ),
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="View Order",
            metadata={"status": status.value},
        )

    async def notify_order_cancelled_admins(self, order: OrderRef, by_customer: bool = False) -> None:
        who = "by customer" if by_customer else "by an administrator"
        await self.safe_broadcast(
            module=NotificationModule.ORDER,
            notification_type=NotificationType.ORDER_CANCELLED,
            title="Order Cancelled",
            message=f"Order #{order.order_number} has been cancelled {who}.",
            priority=NotificationPriority.MEDIUM,
            reference_id=order.id,
            reference_type="order",
            action_url=ADMIN_ORDERS_URL,
            action_label="View Order",
        )

    # ==================== Cancellation notifications ====================

    async def notify_cancellation_requested(self, order: OrderRef, reason: str) -> None:
        await self.safe_broadcast(
            module=NotificationModule.ORDER,
            notification_type=NotificationType.CANCELLATION_REQUESTED,
            title="Cancellation Request",
            message=f"Cancellation request for order #{order.order_number}. Reason: {reason}",
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=ADMIN_CANCELLATIONS_URL,
            action_label="Review Request",
        )
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.ORDER,
            notification_type=NotificationType.CANCELLATION_REQUESTED,
            title="Cancellation Request Submitted",
            message=f"Your cancellation request for order #{order.order_number} is under review.",
            priority=NotificationPriority.MEDIUM,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="View Order",
        )

    async def notify_cancellation_approved(self, order: OrderRef) -> None:
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.ORDER,
            notification_type=NotificationType.CANCELLATION_APPROVED,
            title="Cancellation Approved",
            message=(
                f"Your cancellation request for order #{order.order_number} has been approved. "
                f"Refund will be processed soon."
            ),
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="View Order",
        )

    async def notify_cancellation_rejected(self, order: OrderRef, admin_note: str) -> None:
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.ORDER,
            notification_type=NotificationType.CANCELLATION_REJECTED,
            title="Cancellation Rejected",
            message=(
                f"Your cancellation request for order #{order.order_number} has been rejected. "
                f"Reason: {admin_note}"
            ),
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="View Order",
        )

    # ==================== Return notifications ====================

    async def notify_return_requested(self, order: OrderRef, reason: str) -> None:
        await self.safe_broadcast(
            module=NotificationModule.ORDER,
            notification_type=NotificationType.RETURN_REQUESTED,
            title="Return Request Submitted",
            message=f"Return request for order #{order.order_number} has been submitted. Reason: {reason}",
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=ADMIN_RETURNS_URL,
            action_label="Review Return",
        )

    async def notify_return_status(self, order: OrderRef, approved: bool) -> None:
        verdict = "approved" if approved else "rejected"
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.ORDER,
            notification_type=NotificationType.RETURN_APPROVED if approved else NotificationType.RETURN_REJECTED,
            title=f"Return {verdict.capitalize()}",
            message=f"Your return request for order #{order.order_number} has been {verdict}.",
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="View Order",
        )

    async def notify_refund_completed(self, order: OrderRef, amount: Decimal) -> None:
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.ORDER,
            notification_type=NotificationType.REFUND_COMPLETED,
            title="Refund Completed",
            message=f"Refund of {_money(amount)} for order #{order.order_number} has been processed.",
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="View Order",
            metadata={"amount": str(amount)},
        )

    # ==================== Shipping notifications ====================

    async def notify_courier_assigned(self, order: OrderRef, carrier: str) -> None:
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.SHIPPING,
            notification_type=NotificationType.COURIER_ASSIGNED,
            title="Courier Assigned",
            message=f"{carrier} has been assigned for your order #{order.order_number}.",
            priority=NotificationPriority.MEDIUM,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="Track Order",
        )

    async def notify_tracking_generated(self, order: OrderRef, tracking_number: str) -> None:
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.SHIPPING,
            notification_type=NotificationType.TRACKING_GENERATED,
            title="Tracking Number Generated",
            message=f"Tracking number {tracking_number} generated for order #{order.order_number}.",
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="Track Order",
        )

    async def notify_shipping_status(self, order: OrderRef, status: ShipmentStatus) -> None:
        status = ShipmentStatus(status)
        template = SHIPPING_MESSAGES.get(status)
        if template is None:
            return
        notification_type, title, message = template
        await self.safe_dispatch(
            order.user_id, NotificationRole.USER,
            module=NotificationModule.SHIPPING,
            notification_type=notification_type,
            title=title,
            message=message.format(number=order.order_number),
            priority=(
                NotificationPriority.HIGH
                if status in (ShipmentStatus.OUT_FOR_DELIVERY, ShipmentStatus.DELIVERED)
                else NotificationPriority.MEDIUM
            ),
            reference_id=order.id,
            reference_type="order",
            action_url=CUSTOMER_ORDERS_URL,
            action_label="Track Order",
        )

    async def notify_delivery_failed(self, order: OrderRef, reason: str) -> None:
        await self.safe_broadcast(
            module=NotificationModule.SHIPPING,
            notification_type=NotificationType.DELIVERY_FAILED,
            title="Delivery Failed",
            message=f"Delivery failed for order #{order.order_number}. Reason: {reason}",
            priority=NotificationPriority.URGENT,
            reference_id=order.id,
            reference_type="order",
            action_url=ADMIN_ORDERS_URL,
            action_label="View Shipment",
        )

    # ==================== Affiliate notifications ====================

    async def notify_commission_earned(self, order: OrderRef) -> None:
        if order.affiliate_user_id is None:
            return
        await self.safe_dispatch(
            order.affiliate_user_id, NotificationRole.AFFILIATE,
            module=NotificationModule.AFFILIATE,
            notification_type=NotificationType.COMMISSION_EARNED,
            title="Commission Earned",
            message=(
                f"You earned {_money(order.affiliate_commission)} commission "
                f"from order #{order.order_number}."
            ),
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=AFFILIATE_DASHBOARD_URL,
            action_label="View Details",
        )

    async def notify_commission_rejected(self, order: OrderRef) -> None:
        """Sent when an affiliate-linked order is cancelled or returned."""
        if order.affiliate_user_id is None:
            return
        await self.safe_dispatch(
            order.affiliate_user_id, NotificationRole.AFFILIATE,
            module=NotificationModule.AFFILIATE,
            notification_type=NotificationType.COMMISSION_REJECTED,
            title="Commission Rejected",
            message=(
                f"Your commission of {_money(order.affiliate_commission)} "
                f"from order #{order.order_number} has been rejected."
            ),
            priority=NotificationPriority.HIGH,
            reference_id=order.id,
            reference_type="order",
            action_url=AFFILIATE_DASHBOARD_URL,
            action_label="View Details",
        )
