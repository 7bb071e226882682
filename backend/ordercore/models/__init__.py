from ordercore.models.user import User, AdminUser, Affiliate
from ordercore.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    CancellationStatus,
    PaymentStatus,
    HAPPY_PATH,
    TERMINAL_STATUSES,
    DIRECT_CANCEL_STATUSES,
    CUSTOMER_CANCELLABLE_STATUSES,
    CUSTOMER_CONFIRMABLE_STATUSES,
    ACTIVE_STATUSES,
    STAGE_TIMESTAMPS,
    VALID_ORDER_TRANSITIONS,
    next_status,
)
from ordercore.models.order_status_history import OrderStatusHistory
from ordercore.models.cancellation import (
    CancellationRequest,
    CancellationRequestStatus,
    CANCELLATION_REASONS,
)
from ordercore.models.order_return import (
    OrderReturn,
    ReturnStatus,
    VALID_RETURN_TRANSITIONS,
    RETURN_REASONS,
)
from ordercore.models.shipment import Shipment, ShipmentStatus, COURIERS
from ordercore.models.notification import (
    Notification,
    NotificationRole,
    NotificationModule,
    NotificationType,
    NotificationStatus,
    NotificationPriority,
)
from ordercore.models.side_effect import SideEffectEvent, SideEffectType

__all__ = [
    "User",
    "AdminUser",
    "Affiliate",
    "Order",
    "OrderItem",
    "OrderStatus",
    "CancellationStatus",
    "PaymentStatus",
    "HAPPY_PATH",
    "TERMINAL_STATUSES",
    "DIRECT_CANCEL_STATUSES",
    "CUSTOMER_CANCELLABLE_STATUSES",
    "CUSTOMER_CONFIRMABLE_STATUSES",
    "ACTIVE_STATUSES",
    "STAGE_TIMESTAMPS",
    "VALID_ORDER_TRANSITIONS",
    "next_status",
    "OrderStatusHistory",
    "CancellationRequest",
    "CancellationRequestStatus",
    "CANCELLATION_REASONS",
    "OrderReturn",
    "ReturnStatus",
    "VALID_RETURN_TRANSITIONS",
    "RETURN_REASONS",
    "Shipment",
    "ShipmentStatus",
    "COURIERS",
    "Notification",
    "NotificationRole",
    "NotificationModule",
    "NotificationType",
    "NotificationStatus",
    "NotificationPriority",
    "SideEffectEvent",
    "SideEffectType",
]
