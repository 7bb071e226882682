"""
Tests for the side effect ledger.
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock
import os

# Set test environment
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from ordercore.models import SideEffectType
from ordercore.services.order_ref import OrderRef
from ordercore.services.side_effects import (
    DatabaseSideEffectLedger,
    loyalty_coins_for,
    record_side_effect,
)


def ref(**overrides):
    fields = {
        "id": 1,
        "order_number": "ORD-1",
        "user_id": 5,
        "status": "delivered",
        "total_amount": Decimal("1500.00"),
        "payment_status": "paid",
    }
    fields.update(overrides)
    return OrderRef(**fields)


class TestLoyaltyCoins:

    def test_derived_from_total(self):
        assert loyalty_coins_for(ref()) == 15

    def test_rounds_down(self):
        assert loyalty_coins_for(ref(total_amount=Decimal("199.99"))) == 1

    def test_checkout_value_wins(self):
        assert loyalty_coins_for(ref(loyalty_coins_to_earn=40)) == 40
        assert loyalty_coins_for(ref(loyalty_coins_to_earn=0)) == 0


class TestDatabaseSideEffectLedger:

    @pytest.mark.asyncio
    async def test_records_once(self, db, make_order, side_effect_rows):
        order = await make_order()
        ledger = DatabaseSideEffectLedger(db)

        assert await ledger.record(order.id, SideEffectType.LOYALTY_CREDIT, amount=Decimal("15")) is True
        assert await ledger.record(order.id, SideEffectType.LOYALTY_CREDIT, amount=Decimal("15")) is False
        assert await ledger.record(order.id, SideEffectType.REFUND_QUEUED, amount=Decimal("1500")) is True

        assert len(await side_effect_rows(order.id, SideEffectType.LOYALTY_CREDIT)) == 1


class TestRecordSideEffect:

    @pytest.mark.asyncio
    async def test_failure_is_absorbed(self, mock_db):
        """Test a broken sink is logged and rolled back, never raised."""
        ledger = AsyncMock()
        ledger.record.side_effect = RuntimeError("ledger offline")

        recorded = await record_side_effect(ledger, mock_db, 1, SideEffectType.INVENTORY_RELEASE)

        assert recorded is False
        mock_db.rollback.assert_awaited_once()
