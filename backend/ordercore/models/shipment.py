"""
Shipment model

One shipment per order: carrier, tracking number and the carrier-side
status. Shipment status is informational; it never moves the order's
primary status on its own.
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text
from sqlalchemy.orm import relationship

from ordercore.core.database import Base


class ShipmentStatus(str, Enum):
    """Shipment lifecycle status"""
    PENDING = "pending"  # Courier not yet assigned
    PICKED_UP = "picked_up"  # Carrier has package
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"  # Delivery attempt failed
    RETURNED = "returned"


COURIERS = [
    "Delhivery",
    "Blue Dart",
    "DTDC",
    "Ecom Express",
    "India Post",
    "Xpressbees",
    "Shadowfax",
    "Other",
]


class Shipment(Base):
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)

    carrier = Column(String(100), nullable=True)
    tracking_number = Column(String(100), nullable=True, index=True)
    tracking_url = Column(String(500), nullable=True)
    status = Column(String(30), nullable=False, default=ShipmentStatus.PENDING.value)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    order = relationship("Order", back_populates="shipment")

    def __repr__(self):
        return f"<Shipment(id={self.id}, order_id={self.order_id}, tracking={self.tracking_number}, status={self.status})>"
