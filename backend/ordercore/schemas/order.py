"""
Order, cancellation, return and shipment schemas
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, computed_field

from ordercore.models import OrderStatus, ReturnStatus, ShipmentStatus
from ordercore.services.projections import DISPLAY_LABELS, display_status_key


# ==================== Orders ====================


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    product_name: str
    product_sku: Optional[str] = None
    quantity: int
    unit_price: float
    total_price: float

    class Config:
        from_attributes = True


class ShipmentResponse(BaseModel):
    id: int
    order_id: int
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    order_number: str
    user_id: int
    status: str
    cancellation_status: str
    payment_status: str
    payment_method: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    subtotal: float
    shipping_cost: float
    discount_amount: float
    total_amount: float
    coupon_code: Optional[str] = None
    loyalty_coins_to_earn: Optional[int] = None
    items: List[OrderItemResponse] = []
    shipment: Optional[ShipmentResponse] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    packed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    @computed_field
    @property
    def display_status(self) -> str:
        return display_status_key(self.status, self.cancellation_status)

    @computed_field
    @property
    def display_label(self) -> str:
        return DISPLAY_LABELS[self.display_status]

    class Config:
        from_attributes = True


class OrderList(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int = 1
    page_size: int = 20
    pages: int = 0


class StatusHistoryResponse(BaseModel):
    id: int
    order_id: int
    status: str
    note: Optional[str] = None
    actor_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TransitionRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=1000)


class AllowedTransitions(BaseModel):
    order_id: int
    status: str
    allowed: List[str]


# ==================== Cancellation requests ====================


class CancellationCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)
    comment: Optional[str] = Field(None, max_length=1000)


class CancellationReject(BaseModel):
    admin_note: str = Field(..., min_length=1, max_length=1000)


class CancellationRequestResponse(BaseModel):
    id: int
    order_id: int
    user_id: int
    reason: str
    comment: Optional[str] = None
    status: str
    admin_note: Optional[str] = None
    previous_order_status: str
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None

    class Config:
        from_attributes = True


class BulkDecisionRequest(BaseModel):
    request_ids: List[int] = Field(..., min_length=1, max_length=100)
    admin_note: Optional[str] = Field(None, max_length=1000)


class BulkResultResponse(BaseModel):
    succeeded: List[int]
    failed: Dict[int, str]
    total: int


# ==================== Returns ====================


class ReturnCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)
    comment: Optional[str] = Field(None, max_length=1000)


class ReturnDecision(BaseModel):
    admin_notes: Optional[str] = Field(None, max_length=1000)


class ReturnAdvance(BaseModel):
    status: ReturnStatus
    refund_amount: Optional[float] = Field(None, gt=0)
    admin_notes: Optional[str] = Field(None, max_length=1000)


class ReturnResponse(BaseModel):
    id: int
    order_id: int
    user_id: int
    reason: str
    comment: Optional[str] = None
    status: str
    refund_amount: Optional[float] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None

    class Config:
        from_attributes = True


# ==================== Shipments ====================


class ShipmentUpsert(BaseModel):
    carrier: Optional[str] = Field(None, max_length=100)
    tracking_number: Optional[str] = Field(None, max_length=100)
    tracking_url: Optional[str] = Field(None, max_length=500)


class ShipmentStatusUpdate(BaseModel):
    status: ShipmentStatus
    failure_reason: Optional[str] = Field(None, max_length=1000)
