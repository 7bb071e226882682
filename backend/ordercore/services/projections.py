"""
Read models

Dashboard counters, per-customer stats and paginated order listings. All of
these are recomputed from stored rows on every read; nothing here is cached
or written.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ordercore.core.config import settings
from ordercore.core.exceptions import OrderValidationError
from ordercore.models import (
    CancellationRequest,
    CancellationRequestStatus,
    CancellationStatus,
    Order,
    OrderReturn,
    OrderStatus,
    PaymentStatus,
    ReturnStatus,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

CANCELLATION_REQUESTED = "cancellation_requested"

DISPLAY_LABELS = {
    OrderStatus.PENDING.value: "Pending",
    OrderStatus.CONFIRMED.value: "Confirmed",
    OrderStatus.PROCESSING.value: "Processing",
    OrderStatus.PACKED.value: "Packed",
    OrderStatus.SHIPPED.value: "Shipped",
    OrderStatus.OUT_FOR_DELIVERY.value: "Out for Delivery",
    OrderStatus.DELIVERED.value: "Delivered",
    OrderStatus.CANCELLED.value: "Cancelled",
    OrderStatus.RETURNED.value: "Returned",
    CANCELLATION_REQUESTED: "Cancellation Requested",
}

REFUNDED_PAYMENT_STATUSES = {PaymentStatus.REFUNDED.value, PaymentStatus.PARTIALLY_REFUNDED.value}


def coerce_filter(enum_type: Type[Enum], value: Any, field: str) -> str:
    """Query-string filter to its stored value; unknown values are a 422, not a 500."""
    try:
        return enum_type(value).value
    except ValueError:
        raise OrderValidationError(f"Unknown {field} filter: {value!r}", field=field)


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


def display_status_key(status: str, cancellation_status: Optional[str]) -> str:
    """
    Status shown to people. A live order with a pending cancellation request
    shows as "cancellation_requested"; the stored status is unchanged.
    """
    if (
        cancellation_status == CancellationStatus.REQUESTED.value
        and OrderStatus(status) not in TERMINAL_STATUSES
    ):
        return CANCELLATION_REQUESTED
    return status


def display_status(order: Order) -> str:
    """Human label for an order's current state."""
    key = display_status_key(order.status, order.cancellation_status)
    return DISPLAY_LABELS[key]


async def status_counts(db: AsyncSession) -> Dict[str, int]:
    """Orders per primary status, plus the derived cancellation_requested count and total."""
    result = await db.execute(
        select(Order.status, func.count(Order.id)).group_by(Order.status)
    )
    counts = {status.value: 0 for status in OrderStatus}
    for status, count in result.all():
        counts[status] = count
    counts["total"] = sum(counts[s.value] for s in OrderStatus)

    counts[CANCELLATION_REQUESTED] = await db.scalar(
        select(func.count(Order.id)).where(
            Order.cancellation_status == CancellationStatus.REQUESTED.value,
            Order.status.notin_([s.value for s in TERMINAL_STATUSES]),
        )
    ) or 0
    return counts


async def user_order_stats(db: AsyncSession, user_id: int) -> Dict[str, Any]:
    """Account page summary for one customer."""
    result = await db.execute(
        select(Order.status, Order.payment_status, Order.total_amount)
        .where(Order.user_id == user_id)
    )
    rows = result.all()

    by_status = {status.value: 0 for status in OrderStatus}
    spent = Decimal("0.00")
    active_value = Decimal("0.00")
    for status, payment_status, total in rows:
        by_status[status] += 1
        total = Decimal(total or 0)
        if status != OrderStatus.CANCELLED.value and payment_status in (
            PaymentStatus.PAID.value, *REFUNDED_PAYMENT_STATUSES
        ):
            spent += total
        if OrderStatus(status) in ACTIVE_STATUSES:
            active_value += total

    refunded = await db.scalar(
        select(func.coalesce(func.sum(OrderReturn.refund_amount), 0))
        .join(Order, Order.id == OrderReturn.order_id)
        .where(
            Order.user_id == user_id,
            OrderReturn.status == ReturnStatus.REFUND_COMPLETED.value,
        )
    )
    # Paid orders cancelled before shipping are refunded in full
    cancelled_paid = await db.scalar(
        select(func.coalesce(func.sum(Order.total_amount), 0)).where(
            Order.user_id == user_id,
            Order.status == OrderStatus.CANCELLED.value,
            Order.payment_status.in_([PaymentStatus.PAID.value, *REFUNDED_PAYMENT_STATUSES]),
        )
    )

    return {
        "total_orders": len(rows),
        "pending_orders": by_status[OrderStatus.PENDING.value],
        "processing_orders": (
            by_status[OrderStatus.CONFIRMED.value]
            + by_status[OrderStatus.PROCESSING.value]
            + by_status[OrderStatus.PACKED.value]
        ),
        "shipped_orders": by_status[OrderStatus.SHIPPED.value],
        "out_for_delivery_orders": by_status[OrderStatus.OUT_FOR_DELIVERY.value],
        "delivered_orders": by_status[OrderStatus.DELIVERED.value],
        "cancelled_orders": by_status[OrderStatus.CANCELLED.value],
        "returned_orders": by_status[OrderStatus.RETURNED.value],
        "by_status": by_status,
        "total_amount_spent": spent,
        "total_amount_refunded": Decimal(refunded or 0) + Decimal(cancelled_paid or 0),
        "active_orders_value": active_value,
    }


async def cancellation_request_counts(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(CancellationRequest.status, func.count(CancellationRequest.id))
        .group_by(CancellationRequest.status)
    )
    counts = {status.value: 0 for status in CancellationRequestStatus}
    for status, count in result.all():
        counts[status] = count
    counts["total"] = sum(counts[s.value] for s in CancellationRequestStatus)
    return counts


async def return_counts(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(OrderReturn.status, func.count(OrderReturn.id)).group_by(OrderReturn.status)
    )
    counts = {status.value: 0 for status in ReturnStatus}
    for status, count in result.all():
        counts[status] = count
    counts["total"] = sum(counts[s.value] for s in ReturnStatus)
    return counts


async def list_orders(
    db: AsyncSession,
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    cancellation_status: Optional[str] = None,
    search: Optional[str] = None,
    updated_since: Optional[datetime] = None,
    page: int = 1,
    page_size: Optional[int] = None,
) -> Page:
    """
    Paginated orders, newest first.

    status also accepts "cancellation_requested", which filters on the
    derived label. updated_since lets pollers fetch only what changed.
    """
    page = max(page, 1)
    page_size = min(max(page_size or settings.DEFAULT_PAGE_SIZE, 1), settings.MAX_PAGE_SIZE)

    filters = []
    if user_id is not None:
        filters.append(Order.user_id == user_id)
    if status == CANCELLATION_REQUESTED:
        filters.append(Order.cancellation_status == CancellationStatus.REQUESTED.value)
        filters.append(Order.status.notin_([s.value for s in TERMINAL_STATUSES]))
    elif status:
        filters.append(Order.status == coerce_filter(OrderStatus, status, "status"))
    if cancellation_status:
        filters.append(Order.cancellation_status == coerce_filter(CancellationStatus, cancellation_status, "cancellation_status"))
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(
            Order.order_number.ilike(pattern),
            Order.customer_name.ilike(pattern),
            Order.customer_email.ilike(pattern),
        ))
    if updated_since is not None:
        filters.append(Order.updated_at >= updated_since)

    total = await db.scalar(select(func.count(Order.id)).where(*filters)) or 0

    result = await db.execute(
        select(Order)
        .where(*filters)
        .options(selectinload(Order.items), selectinload(Order.shipment))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return Page(items=list(result.scalars().all()), total=total, page=page, page_size=page_size)
