"""
API dependencies

Authentication happens at the identity gateway in front of this service.
The gateway asserts who the caller is through X-User-Id and X-User-Role.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.database import get_db
from ordercore.services.cancellation_service import CancellationWorkflow
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.order_service import OrderService
from ordercore.services.order_state_machine import OrderStateMachine
from ordercore.services.return_service import ReturnWorkflow
from ordercore.services.shipment_service import ShipmentService

ADMIN_ROLE = "admin"


class Actor(BaseModel):
    """The authenticated caller."""
    user_id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


async def get_current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """Get current authenticated caller"""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity"
        )
    return Actor(user_id=user_id, role=(x_user_role or "user").strip().lower())


async def get_current_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require admin caller"""
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return actor


def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderService:
    return OrderService(db)


def get_state_machine(db: AsyncSession = Depends(get_db)) -> OrderStateMachine:
    return OrderStateMachine(db)


def get_cancellation_workflow(db: AsyncSession = Depends(get_db)) -> CancellationWorkflow:
    return CancellationWorkflow(db)


def get_return_workflow(db: AsyncSession = Depends(get_db)) -> ReturnWorkflow:
    return ReturnWorkflow(db)


def get_shipment_service(db: AsyncSession = Depends(get_db)) -> ShipmentService:
    return ShipmentService(db)


def get_notifier(db: AsyncSession = Depends(get_db)) -> NotificationDispatcher:
    return NotificationDispatcher(db)
