# Services layer for business logic
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.status_ledger import OrderStatusLedger
from ordercore.services.order_state_machine import OrderStateMachine
from ordercore.services.order_service import OrderService
from ordercore.services.cancellation_service import CancellationWorkflow, BulkResult
from ordercore.services.return_service import ReturnWorkflow
from ordercore.services.shipment_service import ShipmentService
from ordercore.services.side_effects import SideEffectLedger, DatabaseSideEffectLedger
from ordercore.services.optimistic import OptimisticOrderView
