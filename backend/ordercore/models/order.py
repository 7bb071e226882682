"""
Order models

The primary status tracks fulfillment progress only. A customer's request to
cancel lives in cancellation_status; "cancellation requested" is a label
derived from the two fields, never a stored status.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import (
    Column, Integer, String, Numeric, ForeignKey, DateTime, Text, JSON,
    Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from ordercore.core.database import Base


class OrderStatus(str, Enum):
    """Primary (fulfillment) status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    PACKED = "packed"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    # Absorbing states
    CANCELLED = "cancelled"
    RETURNED = "returned"


class CancellationStatus(str, Enum):
    """Lifecycle of the customer-initiated cancellation request."""
    NONE = "none"
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    """Payment status as observed from the upstream payment provider."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


HAPPY_PATH: List[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})

# Admin may cancel directly only before the parcel leaves the warehouse
DIRECT_CANCEL_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PACKED,
})

# Customer may file a cancellation request only before packing
CUSTOMER_CANCELLABLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
})

CUSTOMER_CONFIRMABLE_STATUSES = frozenset({
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
})

ACTIVE_STATUSES = frozenset(HAPPY_PATH[:-1])

# Timestamp column set when the order enters a status
STAGE_TIMESTAMPS: Dict[OrderStatus, str] = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PACKED: "packed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.RETURNED: "returned_at",
}


def next_status(status: OrderStatus) -> Optional[OrderStatus]:
    """Immediate happy-path successor, or None at the end of the path."""
    status = OrderStatus(status)
    if status not in HAPPY_PATH:
        return None
    index = HAPPY_PATH.index(status)
    if index + 1 >= len(HAPPY_PATH):
        return None
    return HAPPY_PATH[index + 1]


def _build_transitions() -> Dict[OrderStatus, List[OrderStatus]]:
    transitions: Dict[OrderStatus, List[OrderStatus]] = {}
    for status in HAPPY_PATH:
        targets = []
        successor = next_status(status)
        if successor is not None:
            targets.append(successor)
        if status in DIRECT_CANCEL_STATUSES:
            targets.append(OrderStatus.CANCELLED)
        if status == OrderStatus.DELIVERED:
            targets.append(OrderStatus.RETURNED)
        transitions[status] = targets
    # Terminal states
    transitions[OrderStatus.CANCELLED] = []
    transitions[OrderStatus.RETURNED] = []
    return transitions


VALID_ORDER_TRANSITIONS = _build_transitions()

REQUIRED_ADDRESS_FIELDS = ("full_name", "line1", "city", "postal_code")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_user_status", "user_id", "status"),
        Index("ix_orders_cancellation_status", "cancellation_status"),
        Index("ix_orders_updated_at", "updated_at"),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint("discount_amount >= 0", name="ck_orders_discount_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Order details
    order_number = Column(String(40), unique=True, index=True, nullable=False)
    status = Column(String(30), nullable=False, default=OrderStatus.PENDING.value)
    cancellation_status = Column(String(20), nullable=False, default=CancellationStatus.NONE.value)

    # Customer contact (snapshot at checkout)
    customer_name = Column(String(200))
    customer_email = Column(String(255))
    customer_phone = Column(String(30))
    shipping_address = Column(JSON)

    # Pricing - total_amount == subtotal + shipping_cost - discount_amount
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = Column(Numeric(12, 2), nullable=False)

    # Payment (observed from upstream, never captured here)
    payment_status = Column(String(30), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(50))

    # Coupon / affiliate attribution
    coupon_code = Column(String(50))
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=True)
    affiliate_commission = Column(Numeric(12, 2), nullable=True)

    # Loyalty reward computed at checkout (None = derive from total)
    loyalty_coins_to_earn = Column(Integer, nullable=True)

    notes = Column(Text)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    confirmed_at = Column(DateTime(timezone=True))
    packed_at = Column(DateTime(timezone=True))
    shipped_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    returned_at = Column(DateTime(timezone=True))

    # Relationships
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.id",
    )
    shipment = relationship("Shipment", back_populates="order", uselist=False)
    cancellation_requests = relationship("CancellationRequest", back_populates="order")
    returns = relationship("OrderReturn", back_populates="order")

    @staticmethod
    def compute_total(subtotal: Decimal, shipping_cost: Decimal, discount_amount: Decimal) -> Decimal:
        """subtotal + shipping - discount."""
        return Decimal(subtotal) + Decimal(shipping_cost) - Decimal(discount_amount)

    def totals_are_consistent(self) -> bool:
        """Check total_amount == subtotal + shipping_cost - discount_amount, non-negative."""
        expected = self.compute_total(self.subtotal, self.shipping_cost or 0, self.discount_amount or 0)
        return Decimal(self.total_amount) == expected and expected >= 0

    def missing_address_fields(self) -> List[str]:
        address = self.shipping_address or {}
        return [f for f in REQUIRED_ADDRESS_FIELDS if not str(address.get(f) or "").strip()]

    def __repr__(self):
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status})>"


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)  # catalog is external, no FK

    # Snapshot of product at time of order
    product_name = Column(String(255), nullable=False)
    product_sku = Column(String(100))
    product_snapshot = Column(JSON)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)  # unit_price * quantity

    # Relationships
    order = relationship("Order", back_populates="items")
