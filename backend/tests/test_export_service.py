"""
Tests for CSV export.
"""
import csv
import io
import pytest
import os

# Set test environment
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from ordercore.models import OrderStatus
from ordercore.services.export_service import (
    HISTORY_COLUMNS,
    ORDER_COLUMNS,
    export_orders_csv,
    export_status_history_csv,
)
from ordercore.services.shipment_service import ShipmentService


def parse(content: str):
    return list(csv.DictReader(io.StringIO(content)))


class TestExport:

    @pytest.mark.asyncio
    async def test_orders_csv(self, db, make_order):
        order = await make_order(status=OrderStatus.PACKED)
        await ShipmentService(db).upsert_shipment(order.id, carrier="India Post", tracking_number="IP42")

        content = await export_orders_csv(db)

        assert content.splitlines()[0].split(",") == ORDER_COLUMNS
        rows = parse(content)
        assert len(rows) == 1
        row = rows[0]
        assert row["order_number"] == order.order_number
        assert row["status"] == "packed"
        assert row["display_status"] == "Packed"
        assert row["items"] == "2"
        assert row["carrier"] == "India Post"
        assert row["tracking_number"] == "IP42"

    @pytest.mark.asyncio
    async def test_orders_csv_status_filter(self, db, make_order):
        await make_order()
        await make_order(status=OrderStatus.CONFIRMED)

        rows = parse(await export_orders_csv(db, status="confirmed"))

        assert [row["status"] for row in rows] == ["confirmed"]

    @pytest.mark.asyncio
    async def test_status_history_csv(self, db, make_order, people):
        order = await make_order(status=OrderStatus.PROCESSING)
        await make_order()

        content = await export_status_history_csv(db, order_id=order.id)

        assert content.splitlines()[0].split(",") == HISTORY_COLUMNS
        rows = parse(content)
        assert [row["status"] for row in rows] == ["pending", "confirmed", "processing"]
        assert {row["order_number"] for row in rows} == {order.order_number}
        assert rows[1]["actor_id"] == str(people.admin_id)
