"""
Return request model

Only delivered orders can be returned. A return moves
pending -> approved -> pickup_scheduled -> picked_up -> refund_completed,
or pending -> rejected. At most one open (non-rejected) return per order.
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Text, Index, text
from sqlalchemy.orm import relationship

from ordercore.core.database import Base


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    REFUND_COMPLETED = "refund_completed"


VALID_RETURN_TRANSITIONS = {
    ReturnStatus.PENDING: [ReturnStatus.APPROVED, ReturnStatus.REJECTED],
    ReturnStatus.APPROVED: [ReturnStatus.PICKUP_SCHEDULED],
    ReturnStatus.PICKUP_SCHEDULED: [ReturnStatus.PICKED_UP],
    ReturnStatus.PICKED_UP: [ReturnStatus.REFUND_COMPLETED],
    # Terminal states
    ReturnStatus.REJECTED: [],
    ReturnStatus.REFUND_COMPLETED: [],
}

RETURN_REASONS = [
    "Size/fit issue",
    "Damaged product",
    "Wrong item received",
    "Quality not as expected",
    "Product not as described",
    "Other",
]


class OrderReturn(Base):
    __tablename__ = "order_returns"
    __table_args__ = (
        Index(
            "uq_order_returns_open_order",
            "order_id",
            unique=True,
            postgresql_where=text("status != 'rejected'"),
            sqlite_where=text("status != 'rejected'"),
        ),
        Index("ix_order_returns_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    reason = Column(String(255), nullable=False)
    comment = Column(Text, nullable=True)
    status = Column(String(30), nullable=False, default=ReturnStatus.PENDING.value)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    admin_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    order = relationship("Order", back_populates="returns")

    def __repr__(self):
        return f"<OrderReturn(id={self.id}, order_id={self.order_id}, status={self.status})>"
