"""
OrderService - order intake

Checkout and payment capture live upstream. This service registers an order
they produced: validates the line items and totals, stores the pricing
snapshot, writes the initial "pending" ledger entry and notifies the customer
and the admin roster.
"""
import uuid
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ordercore.core.config import settings
from ordercore.core.exceptions import NotFoundError, OrderValidationError
from ordercore.models import Order, OrderItem, OrderStatus, PaymentStatus, CancellationStatus
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.order_ref import OrderRef
from ordercore.services.status_ledger import OrderStatusLedger

logger = logging.getLogger(__name__)


def to_money(amount: Any, field: str = "amount") -> Decimal:
    """Quantize to two decimal places, rounding half up."""
    if amount is None:
        return Decimal("0.00")
    try:
        return Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise OrderValidationError(f"Invalid monetary amount: {amount!r}", field=field)


def build_item_snapshot(item: Dict[str, Any]) -> Dict[str, Any]:
    """Capture product data at the time of the order."""
    return {
        "id": item.get("product_id"),
        "name": item.get("product_name"),
        "sku": item.get("product_sku"),
        "price": str(item.get("unit_price")),
        "image_url": item.get("image_url"),
        "variant": item.get("variant"),
    }


class OrderService:
    """Order registration and lookup."""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.notifier = notifier or NotificationDispatcher(db)
        self.ledger = OrderStatusLedger(db)

    @staticmethod
    def generate_order_number(prefix: Optional[str] = None) -> str:
        """Generate unique order number in format ORD-YYYYMMDD-XXXXXXXX."""
        prefix = prefix or settings.ORDER_NUMBER_PREFIX
        return f"{prefix}-{datetime.now(timezone.utc).strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"

    async def register_order(
        self,
        user_id: int,
        items: List[Dict[str, Any]],
        shipping_cost: Any = 0,
        discount_amount: Any = 0,
        shipping_address: Optional[Dict[str, Any]] = None,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_method: Optional[str] = None,
        coupon_code: Optional[str] = None,
        affiliate_id: Optional[int] = None,
        affiliate_commission: Any = None,
        loyalty_coins_to_earn: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Persist a new pending order with its line items.

        Each item is a dict with product_id, product_name, quantity and
        unit_price, plus optional product_sku / image_url / variant.

        Raises:
            OrderValidationError: no items, bad quantity or price, or a
                discount larger than subtotal plus shipping
        """
        if not items:
            raise OrderValidationError("An order needs at least one item", field="items")

        subtotal = Decimal("0.00")
        order_items = []
        for index, item in enumerate(items):
            quantity = int(item.get("quantity") or 0)
            if quantity < 1:
                raise OrderValidationError(
                    f"Item {index + 1}: quantity must be at least 1", field="quantity"
                )
            unit_price = to_money(item.get("unit_price"), field="unit_price")
            if unit_price < 0:
                raise OrderValidationError(
                    f"Item {index + 1}: unit price cannot be negative", field="unit_price"
                )
            name = (item.get("product_name") or "").strip()
            if not name:
                raise OrderValidationError(f"Item {index + 1}: product name is required", field="product_name")

            line_total = unit_price * quantity
            subtotal += line_total
            order_items.append(OrderItem(
                product_id=item["product_id"],
                product_name=name,
                product_sku=item.get("product_sku"),
                product_snapshot=build_item_snapshot(item),
                quantity=quantity,
                unit_price=unit_price,
                total_price=line_total,
            ))

        shipping = to_money(shipping_cost, field="shipping_cost")
        discount = to_money(discount_amount, field="discount_amount")
        if shipping < 0 or discount < 0:
            raise OrderValidationError("Shipping and discount cannot be negative")

        total = Order.compute_total(subtotal, shipping, discount)
        if total < 0:
            raise OrderValidationError(
                f"Discount {discount} exceeds subtotal plus shipping ({subtotal + shipping})",
                field="discount_amount",
            )

        order = Order(
            user_id=user_id,
            order_number=self.generate_order_number(),
            status=OrderStatus.PENDING.value,
            cancellation_status=CancellationStatus.NONE.value,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            shipping_address=shipping_address,
            subtotal=subtotal,
            shipping_cost=shipping,
            discount_amount=discount,
            total_amount=total,
            payment_status=PaymentStatus(payment_status).value,
            payment_method=payment_method,
            coupon_code=coupon_code,
            affiliate_id=affiliate_id,
            affiliate_commission=(
                to_money(affiliate_commission, field="affiliate_commission")
                if affiliate_commission is not None else None
            ),
            loyalty_coins_to_earn=loyalty_coins_to_earn,
            notes=notes,
        )
        order.items = order_items
        self.db.add(order)
        await self.db.flush()

        self.ledger.append(order.id, OrderStatus.PENDING, note="Order placed", actor_id=user_id)
        await self.db.commit()

        logger.info(f"Registered order {order.order_number} for user {user_id}: total={total}")

        ref = await OrderRef.load(self.db, order)
        await self.notifier.notify_order_placed(ref)
        return await self.get_order(ref.id)

    async def get_order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        """
        Load an order with items and shipment.

        With user_id, another customer's order is reported as not found.
        """
        query = (
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items), selectinload(Order.shipment))
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order
