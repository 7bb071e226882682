"""
CSV export for orders and the status ledger. Read only.
"""
import csv
import io
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ordercore.models import Order, OrderStatusHistory, OrderStatus
from ordercore.services.projections import coerce_filter, display_status

logger = logging.getLogger(__name__)

ORDER_COLUMNS = [
    "order_number",
    "created_at",
    "customer_name",
    "customer_email",
    "status",
    "display_status",
    "cancellation_status",
    "payment_status",
    "items",
    "subtotal",
    "shipping_cost",
    "discount_amount",
    "total_amount",
    "coupon_code",
    "carrier",
    "tracking_number",
]

HISTORY_COLUMNS = ["order_number", "status", "note", "actor_id", "created_at"]


def _fmt(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


async def export_orders_csv(
    db: AsyncSession,
    status: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
) -> str:
    """One row per order, oldest first."""
    query = (
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.shipment))
        .order_by(Order.created_at, Order.id)
    )
    if status:
        query = query.where(Order.status == coerce_filter(OrderStatus, status, "status"))
    if created_from is not None:
        query = query.where(Order.created_at >= created_from)
    if created_to is not None:
        query = query.where(Order.created_at < created_to)

    result = await db.execute(query)
    orders = result.scalars().all()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(ORDER_COLUMNS)
    for order in orders:
        shipment = order.shipment
        writer.writerow([
            order.order_number,
            _fmt(order.created_at),
            _fmt(order.customer_name),
            _fmt(order.customer_email),
            order.status,
            display_status(order),
            order.cancellation_status,
            order.payment_status,
            sum(item.quantity for item in order.items),
            _fmt(order.subtotal),
            _fmt(order.shipping_cost),
            _fmt(order.discount_amount),
            _fmt(order.total_amount),
            _fmt(order.coupon_code),
            _fmt(shipment.carrier if shipment else None),
            _fmt(shipment.tracking_number if shipment else None),
        ])

    logger.info(f"Exported {len(orders)} orders to CSV")
    return buffer.getvalue()


async def export_status_history_csv(db: AsyncSession, order_id: Optional[int] = None) -> str:
    query = (
        select(OrderStatusHistory, Order.order_number)
        .join(Order, Order.id == OrderStatusHistory.order_id)
        .order_by(OrderStatusHistory.order_id, OrderStatusHistory.created_at, OrderStatusHistory.id)
    )
    if order_id is not None:
        query = query.where(OrderStatusHistory.order_id == order_id)

    result = await db.execute(query)
    rows = result.all()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(HISTORY_COLUMNS)
    for entry, order_number in rows:
        writer.writerow([
            order_number,
            entry.status,
            _fmt(entry.note),
            _fmt(entry.actor_id),
            _fmt(entry.created_at),
        ])
    return buffer.getvalue()
