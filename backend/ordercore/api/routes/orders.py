"""
Customer order routes
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.api.deps import (
    Actor,
    get_cancellation_workflow,
    get_current_actor,
    get_order_service,
    get_return_workflow,
    get_state_machine,
)
from ordercore.core.database import get_db
from ordercore.core.rate_limit import get_customer_request_limit
from ordercore.schemas.order import (
    CancellationCreate,
    CancellationRequestResponse,
    OrderList,
    OrderResponse,
    ReturnCreate,
    ReturnResponse,
    StatusHistoryResponse,
)
from ordercore.services.cancellation_service import CancellationWorkflow
from ordercore.services.order_service import OrderService
from ordercore.services.order_state_machine import OrderStateMachine
from ordercore.services.projections import list_orders as list_orders_page, user_order_stats
from ordercore.services.return_service import ReturnWorkflow
from ordercore.services.status_ledger import OrderStatusLedger

router = APIRouter()


@router.get("", response_model=OrderList)
async def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Get current user's orders"""
    result = await list_orders_page(
        db, user_id=actor.user_id, status=status_filter, page=page, page_size=page_size
    )
    return OrderList(
        orders=result.items,
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )


@router.get("/stats")
async def get_my_stats(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Order counts and spending summary for the account page"""
    stats = await user_order_stats(db, actor.user_id)
    for key in ("total_amount_spent", "total_amount_refunded", "active_orders_value"):
        stats[key] = float(stats[key])
    return stats


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service)
):
    """Get single order"""
    return await orders.get_order(order_id, user_id=actor.user_id)


@router.get("/{order_id}/timeline", response_model=List[StatusHistoryResponse])
async def get_order_timeline(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
    db: AsyncSession = Depends(get_db)
):
    """Status history, oldest first"""
    await orders.get_order(order_id, user_id=actor.user_id)
    return await OrderStatusLedger(db).timeline(order_id)


@router.post(
    "/{order_id}/cancellation",
    response_model=CancellationRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
@get_customer_request_limit()
async def request_cancellation(
    request: Request,
    order_id: int,
    payload: CancellationCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: CancellationWorkflow = Depends(get_cancellation_workflow)
):
    """Ask an admin to cancel the order"""
    return await workflow.file_cancellation(
        order_id, actor.user_id, payload.reason, comment=payload.comment
    )


@router.post(
    "/{order_id}/returns",
    response_model=ReturnResponse,
    status_code=status.HTTP_201_CREATED,
)
@get_customer_request_limit()
async def request_return(
    request: Request,
    order_id: int,
    payload: ReturnCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: ReturnWorkflow = Depends(get_return_workflow)
):
    """Request a return of a delivered order"""
    return await workflow.file_return(
        order_id, actor.user_id, payload.reason, comment=payload.comment
    )


@router.post("/{order_id}/confirm-delivery", response_model=OrderResponse)
async def confirm_delivery(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    machine: OrderStateMachine = Depends(get_state_machine)
):
    """Customer confirms the parcel arrived"""
    return await machine.confirm_delivery(order_id, actor.user_id)
