"""
Order status ledger

Append-only record of primary-status transitions. Entries are added to the
caller's session and commit together with the status change they describe,
so the ledger never shows a transition that didn't happen.
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.models import (
    OrderStatusHistory,
    OrderStatus,
    HAPPY_PATH,
    DIRECT_CANCEL_STATUSES,
)

logger = logging.getLogger(__name__)


class OrderStatusLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    def append(
        self,
        order_id: int,
        status: OrderStatus,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> OrderStatusHistory:
        """Stage a ledger entry in the current transaction. Does not commit."""
        entry = OrderStatusHistory(
            order_id=order_id,
            status=OrderStatus(status).value,
            note=note,
            actor_id=actor_id,
        )
        self.db.add(entry)
        return entry

    async def timeline(self, order_id: int) -> List[OrderStatusHistory]:
        """Entries for one order, oldest first."""
        result = await self.db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
        )
        return list(result.scalars().all())

    async def latest(self, order_id: int) -> Optional[OrderStatusHistory]:
        result = await self.db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at.desc(), OrderStatusHistory.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def is_monotonic(statuses: Iterable[str]) -> bool:
        """
        True when a status sequence only moves forward along the happy path,
        with an optional absorbing status at the very end: cancelled after a
        pre-shipment status, returned after delivered.
        """
        sequence = [OrderStatus(s) for s in statuses]
        last_index = -1
        for position, status in enumerate(sequence):
            previous = sequence[position - 1] if position else None
            if status == OrderStatus.CANCELLED:
                return position == len(sequence) - 1 and (
                    previous is None or previous in DIRECT_CANCEL_STATUSES
                )
            if status == OrderStatus.RETURNED:
                return position == len(sequence) - 1 and previous == OrderStatus.DELIVERED
            index = HAPPY_PATH.index(status)
            if index <= last_index:
                return False
            last_index = index
        return True
