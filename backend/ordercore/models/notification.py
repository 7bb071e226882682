"""
Notification model

Created once per recipient. The only mutation is flipping status to "read".
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, JSON, Index

from ordercore.core.database import Base


class NotificationRole(str, Enum):
    """Capacity in which the recipient receives the notification."""
    USER = "user"
    ADMIN = "admin"
    AFFILIATE = "affiliate"
    INSTAGRAM_USER = "instagram_user"


class NotificationModule(str, Enum):
    ORDER = "order"
    SHIPPING = "shipping"
    INSTAGRAM = "instagram"
    AFFILIATE = "affiliate"


class NotificationType(str, Enum):
    # Order lifecycle
    ORDER_PLACED = "order_placed"
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_PROCESSING = "order_processing"
    ORDER_PACKED = "order_packed"
    ORDER_SHIPPED = "order_shipped"
    ORDER_OUT_FOR_DELIVERY = "order_out_for_delivery"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_RETURNED = "order_returned"
    # Cancellation workflow
    CANCELLATION_REQUESTED = "cancellation_requested"
    CANCELLATION_APPROVED = "cancellation_approved"
    CANCELLATION_REJECTED = "cancellation_rejected"
    # Return workflow
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    REFUND_COMPLETED = "refund_completed"
    # Shipping
    COURIER_ASSIGNED = "courier_assigned"
    TRACKING_GENERATED = "tracking_generated"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    # Affiliate
    COMMISSION_EARNED = "commission_earned"
    COMMISSION_REJECTED = "commission_rejected"


class NotificationStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"


class NotificationPriority(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_status", "user_id", "status"),
        Index("ix_notifications_reference", "reference_type", "reference_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)  # recipient

    role = Column(String(20), nullable=False)
    module = Column(String(20), nullable=False)
    type = Column(String(40), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String(10), nullable=False, default=NotificationStatus.UNREAD.value)
    priority = Column(String(10), nullable=False, default=NotificationPriority.MEDIUM.value)

    # Back-link to the order/shipment/etc.
    reference_id = Column(String(64), nullable=True)
    reference_type = Column(String(30), nullable=True)

    # UI deep-linking
    action_url = Column(String(255), nullable=True)
    action_label = Column(String(50), nullable=True)
    extra_data = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    read_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_read(self) -> bool:
        return self.status == NotificationStatus.READ.value

    def __repr__(self):
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type}, status={self.status})>"
