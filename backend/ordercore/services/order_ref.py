"""
Plain snapshot of the order fields that post-commit hooks need.

Notifications and side effects run after the transition commits. A failed
notification rolls the session back, which expires every loaded instance, so
the hooks read from this snapshot instead of the ORM object.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.models import Order, Affiliate


@dataclass(frozen=True)
class OrderRef:
    id: int
    order_number: str
    user_id: int
    status: str
    total_amount: Decimal
    payment_status: str
    loyalty_coins_to_earn: Optional[int] = None
    affiliate_user_id: Optional[int] = None
    affiliate_commission: Optional[Decimal] = None

    @classmethod
    async def load(cls, db: AsyncSession, order: Order) -> "OrderRef":
        affiliate_user_id = None
        if order.affiliate_id is not None:
            affiliate_user_id = await db.scalar(
                select(Affiliate.user_id).where(Affiliate.id == order.affiliate_id)
            )
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status,
            total_amount=Decimal(order.total_amount),
            payment_status=order.payment_status,
            loyalty_coins_to_earn=order.loyalty_coins_to_earn,
            affiliate_user_id=affiliate_user_id,
            affiliate_commission=(
                Decimal(order.affiliate_commission)
                if order.affiliate_commission is not None else None
            ),
        )
