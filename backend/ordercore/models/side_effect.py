"""
Side effect events (loyalty credit, refund queue, inventory release)

The loyalty/refund ledger deduplicates on (order_id, event_type), so
recording the same effect twice is harmless.
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, JSON, UniqueConstraint

from ordercore.core.database import Base


class SideEffectType(str, Enum):
    LOYALTY_CREDIT = "loyalty_credit"
    REFUND_QUEUED = "refund_queued"
    INVENTORY_RELEASE = "inventory_release"
    RETURN_REFUND = "return_refund"


class SideEffectEvent(Base):
    __tablename__ = "side_effect_events"
    __table_args__ = (
        UniqueConstraint("order_id", "event_type", name="uq_side_effect_events_order_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<SideEffectEvent(order_id={self.order_id}, type={self.event_type}, amount={self.amount})>"
