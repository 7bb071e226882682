"""
Cancellation request model

A customer files, an admin approves or rejects. Both decisions are terminal.
The partial unique index keeps at most one pending request per order, so the
database itself rejects a duplicate that slips past the service check.
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Index, text
from sqlalchemy.orm import relationship

from ordercore.core.database import Base


class CancellationRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


CANCELLATION_REASONS = [
    "Ordered by mistake",
    "Found cheaper elsewhere",
    "Delivery taking too long",
    "Changed my mind",
    "Wrong product ordered",
    "Duplicate order",
    "Other",
]


class CancellationRequest(Base):
    __tablename__ = "cancellation_requests"
    __table_args__ = (
        Index(
            "uq_cancellation_requests_pending_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_cancellation_requests_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    reason = Column(String(255), nullable=False)
    comment = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=CancellationRequestStatus.PENDING.value)
    admin_note = Column(Text, nullable=True)  # populated on rejection only

    # Order status when the request was filed
    previous_order_status = Column(String(30), nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    order = relationship("Order", back_populates="cancellation_requests")

    @property
    def is_pending(self) -> bool:
        return self.status == CancellationRequestStatus.PENDING.value

    def __repr__(self):
        return f"<CancellationRequest(id={self.id}, order_id={self.order_id}, status={self.status})>"
