"""
Side effect ledger

Loyalty credit, refund queueing and inventory release are owned by other
services. This module records that an effect is due, once per
(order, effect type). Recording is fire-and-forget from the caller's point of
view: a failure is logged and never undoes the transition that caused it.
"""
import logging
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.core.config import settings
from ordercore.models import SideEffectEvent, SideEffectType, PaymentStatus
from ordercore.services.order_ref import OrderRef

logger = logging.getLogger(__name__)


class SideEffectLedger(Protocol):
    """Protocol for side effect sinks."""

    async def record(
        self,
        order_id: int,
        event_type: SideEffectType,
        amount: Optional[Decimal] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record an effect. Returns False when it was already recorded."""
        ...


class DatabaseSideEffectLedger:
    """Writes side effect events to side_effect_events, deduplicated by a unique key."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        order_id: int,
        event_type: SideEffectType,
        amount: Optional[Decimal] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        event_type = SideEffectType(event_type)
        existing = await self.db.scalar(
            select(SideEffectEvent.id).where(
                SideEffectEvent.order_id == order_id,
                SideEffectEvent.event_type == event_type.value,
            )
        )
        if existing is not None:
            logger.info(f"Side effect {event_type.value} already recorded for order {order_id}")
            return False

        self.db.add(SideEffectEvent(
            order_id=order_id,
            event_type=event_type.value,
            amount=amount,
            payload=payload,
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the race to a concurrent writer; the effect exists either way
            await self.db.rollback()
            logger.info(f"Side effect {event_type.value} for order {order_id} recorded concurrently")
            return False

        logger.info(f"Recorded side effect {event_type.value} for order {order_id} amount={amount}")
        return True


def loyalty_coins_for(ref: OrderRef) -> int:
    """Coins stored at checkout win; otherwise floor(total * rate)."""
    if ref.loyalty_coins_to_earn is not None:
        return max(int(ref.loyalty_coins_to_earn), 0)
    rate = Decimal(str(settings.LOYALTY_COINS_PER_CURRENCY_UNIT))
    coins = (Decimal(ref.total_amount) * rate).to_integral_value(rounding=ROUND_FLOOR)
    return max(int(coins), 0)


async def record_side_effect(
    ledger: SideEffectLedger,
    db: AsyncSession,
    order_id: int,
    event_type: SideEffectType,
    amount: Optional[Decimal] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """Record an effect, logging and absorbing any failure."""
    try:
        return await ledger.record(order_id, event_type, amount=amount, payload=payload)
    except Exception as e:
        await db.rollback()
        logger.error(
            f"Failed to record side effect {SideEffectType(event_type).value} "
            f"for order {order_id}: {e}",
            exc_info=True,
        )
        return False


async def record_delivery_effects(ledger: SideEffectLedger, db: AsyncSession, ref: OrderRef) -> None:
    coins = loyalty_coins_for(ref)
    if coins > 0:
        await record_side_effect(
            ledger, db, ref.id, SideEffectType.LOYALTY_CREDIT,
            amount=Decimal(coins),
            payload={"user_id": ref.user_id, "coins": coins, "order_number": ref.order_number},
        )


async def record_cancellation_effects(ledger: SideEffectLedger, db: AsyncSession, ref: OrderRef) -> None:
    await record_side_effect(
        ledger, db, ref.id, SideEffectType.INVENTORY_RELEASE,
        payload={"order_number": ref.order_number},
    )
    if ref.payment_status == PaymentStatus.PAID.value:
        await record_side_effect(
            ledger, db, ref.id, SideEffectType.REFUND_QUEUED,
            amount=ref.total_amount,
            payload={"user_id": ref.user_id, "order_number": ref.order_number},
        )
