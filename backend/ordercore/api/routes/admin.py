"""
Admin API Routes for Order Management

- All admin endpoints require the admin role
- Every decision is written to the audit log
- Bulk decisions isolate per-item failures
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.api.deps import (
    Actor,
    get_cancellation_workflow,
    get_current_admin,
    get_order_service,
    get_return_workflow,
    get_shipment_service,
    get_state_machine,
)
from ordercore.core.audit_log import AuditAction, audit_action, log_admin_action
from ordercore.core.database import get_db
from ordercore.models import CancellationRequestStatus, ReturnStatus
from ordercore.schemas.order import (
    AllowedTransitions,
    BulkDecisionRequest,
    BulkResultResponse,
    CancellationReject,
    CancellationRequestResponse,
    OrderList,
    OrderResponse,
    ReturnAdvance,
    ReturnDecision,
    ReturnResponse,
    ShipmentResponse,
    ShipmentStatusUpdate,
    ShipmentUpsert,
    StatusHistoryResponse,
    TransitionRequest,
)
from ordercore.services.cancellation_service import CancellationWorkflow
from ordercore.services.export_service import export_orders_csv, export_status_history_csv
from ordercore.services.order_service import OrderService
from ordercore.services.order_state_machine import OrderStateMachine
from ordercore.services.projections import (
    cancellation_request_counts,
    list_orders as list_orders_page,
    return_counts,
    status_counts,
)
from ordercore.services.return_service import ReturnWorkflow
from ordercore.services.shipment_service import ShipmentService
from ordercore.services.status_ledger import OrderStatusLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ----- Dashboard -----

@router.get("/dashboard")
async def get_dashboard(
    current_admin: Actor = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """Order, cancellation and return counters for the admin home page."""
    return {
        "orders": await status_counts(db),
        "cancellation_requests": await cancellation_request_counts(db),
        "returns": await return_counts(db),
    }


# ----- Orders -----

@router.get("/orders", response_model=OrderList)
async def list_orders(
    status: Optional[str] = None,
    cancellation_status: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    user_id: Optional[int] = None,
    updated_since: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    current_admin: Actor = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """List all orders. Pollers pass updated_since to fetch only changes."""
    result = await list_orders_page(
        db,
        user_id=user_id,
        status=status,
        cancellation_status=cancellation_status,
        search=search,
        updated_since=updated_since,
        page=page,
        page_size=page_size,
    )
    return OrderList(
        orders=result.items,
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    current_admin: Actor = Depends(get_current_admin),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.get_order(order_id)


@router.get("/orders/{order_id}/allowed-transitions", response_model=AllowedTransitions)
async def get_allowed_transitions(
    order_id: int,
    current_admin: Actor = Depends(get_current_admin),
    machine: OrderStateMachine = Depends(get_state_machine)
):
    """Targets the status dropdown should offer."""
    order = await machine.get_order(order_id)
    return AllowedTransitions(
        order_id=order.id,
        status=order.status,
        allowed=[target.value for target in machine.allowed_targets(order)],
    )


@router.post("/orders/{order_id}/transition", response_model=OrderResponse)
@audit_action(AuditAction.ORDER_TRANSITION, "order")
async def transition_order(
    request: Request,
    order_id: int,
    payload: TransitionRequest,
    current_admin: Actor = Depends(get_current_admin),
    machine: OrderStateMachine = Depends(get_state_machine)
):
    """Move an order to its next status, or cancel it before it ships."""
    return await machine.transition(
        order_id, payload.status, note=payload.note, actor_id=current_admin.user_id
    )


@router.get("/orders/{order_id}/timeline", response_model=List[StatusHistoryResponse])
async def get_order_timeline(
    order_id: int,
    current_admin: Actor = Depends(get_current_admin),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    await orders.get_order(order_id)
    return await OrderStatusLedger(db).timeline(order_id)


# ----- Shipments -----

@router.put("/orders/{order_id}/shipment", response_model=ShipmentResponse)
@audit_action(AuditAction.SHIPMENT_UPDATE, "shipment")
async def upsert_shipment(
    request: Request,
    order_id: int,
    payload: ShipmentUpsert,
    current_admin: Actor = Depends(get_current_admin),
    shipments: ShipmentService = Depends(get_shipment_service)
):
    """Assign a courier and/or tracking number."""
    return await shipments.upsert_shipment(
        order_id,
        carrier=payload.carrier,
        tracking_number=payload.tracking_number,
        tracking_url=payload.tracking_url,
    )


@router.post("/orders/{order_id}/shipment/status", response_model=ShipmentResponse)
@audit_action(AuditAction.SHIPMENT_UPDATE, "shipment")
async def update_shipment_status(
    request: Request,
    order_id: int,
    payload: ShipmentStatusUpdate,
    current_admin: Actor = Depends(get_current_admin),
    shipments: ShipmentService = Depends(get_shipment_service)
):
    return await shipments.update_status(order_id, payload.status, failure_reason=payload.failure_reason)


# ----- Cancellation requests -----

@router.get("/cancellation-requests", response_model=List[CancellationRequestResponse])
async def list_cancellation_requests(
    status: Optional[CancellationRequestStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_admin: Actor = Depends(get_current_admin),
    workflow: CancellationWorkflow = Depends(get_cancellation_workflow)
):
    return await workflow.list_requests(status=status, limit=limit, offset=offset)


@router.post("/cancellation-requests/bulk-approve", response_model=BulkResultResponse)
async def bulk_approve_cancellations(
    request: Request,
    payload: BulkDecisionRequest,
    current_admin: Actor = Depends(get_current_admin),
    workflow: CancellationWorkflow = Depends(get_cancellation_workflow)
):
    """Approve several requests; each one succeeds or fails on its own."""
    result = await workflow.bulk_approve(payload.request_ids, current_admin.user_id)
    log_admin_action(
        action=AuditAction.CANCELLATION_BULK,
        admin_id=current_admin.user_id,
        resource_type="cancellation_request",
        details={"decision": "approve", "succeeded": result.succeeded, "failed": result.failed},
        ip_address=request.client.host if request.client else None,
        success=not result.failed,
    )
    return BulkResultResponse(succeeded=result.succeeded, failed=result.failed, total=result.total)


@router.post("/cancellation-requests/bulk-reject", response_model=BulkResultResponse)
async def bulk_reject_cancellations(
    request: Request,
    payload: BulkDecisionRequest,
    current_admin: Actor = Depends(get_current_admin),
    workflow: CancellationWorkflow = Depends(get_cancellation_workflow)
):
    result = await workflow.bulk_reject(payload.request_ids, current_admin.user_id, payload.admin_note or "")
    log_admin_action(
        action=AuditAction.CANCELLATION_BULK,
        admin_id=current_admin.user_id,
        resource_type="cancellation_request",
        details={"decision": "reject", "succeeded": result.succeeded, "failed": result.failed},
        ip_address=request.client.host if request.client else None,
        success=not result.failed,
    )
    return BulkResultResponse(succeeded=result.succeeded, failed=result.failed, total=result.total)


@router.get("/cancellation-requests/{request_id}", response_model=CancellationRequestResponse)
async def get_cancellation_request(
    request_id: int,
    current_admin: Actor = Depends(get_current_admin),
    workflow: CancellationWorkflow = Depends(get_cancellation_workflow)
):
    return await workflow.get_request(request_id)


@router.post("/cancellation-requests/{request_id}/approve", response_model=CancellationRequestResponse)
@audit_action(AuditAction.CANCELLATION_APPROVE, "cancellation_request")
async def approve_cancellation(
    request: Request,
    request_id: int,
    current_admin: Actor = Depends(get_current_admin),
    workflow: CancellationWorkflow = Depends(get_cancellation_workflow)
):
    """Approve and cancel the order."""
    return await workflow.approve_cancellation(request_id, current_admin.user_id)


@router.post("/cancellation-requests/{request_id}/reject", response_model=CancellationRequestResponse)
@audit_action(AuditAction.CANCELLATION_REJECT, "cancellation_request")
async def reject_cancellation(
    request: Request,
    request_id: int,
    payload: CancellationReject,
    current_admin: Actor = Depends(get_current_admin),
    workflow: CancellationWorkflow = Depends(get_cancellation_workflow)
):
    """Reject with a note shown to the customer. The order keeps its status."""
    return await workflow.reject_cancellation(request_id, current_admin.user_id, payload.admin_note)


# ----- Returns -----

@router.get("/returns", response_model=List[ReturnResponse])
async def list_returns(
    status: Optional[ReturnStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_admin: Actor = Depends(get_current_admin),
    workflow: ReturnWorkflow = Depends(get_return_workflow)
):
    return await workflow.list_returns(status=status, limit=limit, offset=offset)


@router.post("/returns/{return_id}/approve", response_model=ReturnResponse)
@audit_action(AuditAction.RETURN_APPROVE, "return")
async def approve_return(
    request: Request,
    return_id: int,
    payload: ReturnDecision,
    current_admin: Actor = Depends(get_current_admin),
    workflow: ReturnWorkflow = Depends(get_return_workflow)
):
    return await workflow.approve_return(return_id, current_admin.user_id, admin_notes=payload.admin_notes)


@router.post("/returns/{return_id}/reject", response_model=ReturnResponse)
@audit_action(AuditAction.RETURN_REJECT, "return")
async def reject_return(
    request: Request,
    return_id: int,
    payload: ReturnDecision,
    current_admin: Actor = Depends(get_current_admin),
    workflow: ReturnWorkflow = Depends(get_return_workflow)
):
    return await workflow.reject_return(return_id, current_admin.user_id, admin_notes=payload.admin_notes)


@router.post("/returns/{return_id}/advance", response_model=ReturnResponse)
@audit_action(AuditAction.RETURN_ADVANCE, "return")
async def advance_return(
    request: Request,
    return_id: int,
    payload: ReturnAdvance,
    current_admin: Actor = Depends(get_current_admin),
    workflow: ReturnWorkflow = Depends(get_return_workflow)
):
    """Schedule pickup, mark picked up, or complete the refund."""
    return await workflow.advance_return(
        return_id,
        payload.status,
        current_admin.user_id,
        refund_amount=payload.refund_amount,
        admin_notes=payload.admin_notes,
    )


# ----- Export -----

@router.get("/export/orders.csv")
@audit_action(AuditAction.EXPORT, "order")
async def export_orders(
    request: Request,
    status: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    current_admin: Actor = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    content = await export_orders_csv(db, status=status, created_from=created_from, created_to=created_to)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=orders.csv"},
    )


@router.get("/export/status-history.csv")
@audit_action(AuditAction.EXPORT, "order_status_history")
async def export_status_history(
    request: Request,
    order_id: Optional[int] = None,
    current_admin: Actor = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    content = await export_status_history_csv(db, order_id=order_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=status-history.csv"},
    )
