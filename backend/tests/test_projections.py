"""
Tests for read models: display labels, dashboard counters, customer stats
and order listings.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import os

# Set test environment
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from ordercore.core.exceptions import OrderValidationError
from ordercore.models import OrderStatus, PaymentStatus, ReturnStatus
from ordercore.services.cancellation_service import CancellationWorkflow
from ordercore.services.projections import (
    CANCELLATION_REQUESTED,
    Page,
    cancellation_request_counts,
    display_status,
    display_status_key,
    list_orders,
    return_counts,
    status_counts,
    user_order_stats,
)
from ordercore.services.return_service import ReturnWorkflow


class TestDisplayStatus:
    """Test the derived "cancellation requested" label."""

    def test_requested_on_live_order(self):
        assert display_status_key("confirmed", "requested") == CANCELLATION_REQUESTED

    def test_requested_ignored_once_terminal(self):
        assert display_status_key("cancelled", "requested") == "cancelled"

    def test_decided_request_shows_status(self):
        assert display_status_key("processing", "rejected") == "processing"
        assert display_status_key("pending", "none") == "pending"

    @pytest.mark.asyncio
    async def test_label_for_order(self, db, make_order, people):
        order = await make_order(status=OrderStatus.OUT_FOR_DELIVERY)
        assert display_status(order) == "Out for Delivery"

        pending = await make_order()
        await CancellationWorkflow(db).file_cancellation(pending.id, people.customer_id, "Changed my mind")
        reloaded = await CancellationWorkflow(db).machine.get_order(pending.id)
        assert display_status(reloaded) == "Cancellation Requested"
        assert reloaded.status == OrderStatus.PENDING.value


class TestPage:
    def test_pages_rounds_up(self):
        assert Page(total=41, page_size=20).pages == 3
        assert Page(total=0, page_size=20).pages == 0


class TestCounters:
    """Test dashboard counters."""

    @pytest.mark.asyncio
    async def test_status_counts(self, db, make_order, people):
        await make_order()
        requested = await make_order(status=OrderStatus.CONFIRMED)
        await make_order(status=OrderStatus.CANCELLED)
        await CancellationWorkflow(db).file_cancellation(requested.id, people.customer_id, "Changed my mind")

        counts = await status_counts(db)

        assert counts["pending"] == 1
        assert counts["confirmed"] == 1
        assert counts["cancelled"] == 1
        assert counts["delivered"] == 0
        assert counts["total"] == 3
        assert counts[CANCELLATION_REQUESTED] == 1

    @pytest.mark.asyncio
    async def test_request_and_return_counts(self, db, make_order, people):
        workflow = CancellationWorkflow(db)
        first = await make_order()
        second = await make_order()
        request = await workflow.file_cancellation(first.id, people.customer_id, "Changed my mind")
        await workflow.file_cancellation(second.id, people.customer_id, "Changed my mind")
        await workflow.approve_cancellation(request.id, people.admin_id)

        delivered = await make_order(status=OrderStatus.DELIVERED)
        await ReturnWorkflow(db).file_return(delivered.id, people.customer_id, "Size/fit issue")

        requests = await cancellation_request_counts(db)
        assert requests == {"pending": 1, "approved": 1, "rejected": 0, "total": 2}

        returns = await return_counts(db)
        assert returns[ReturnStatus.PENDING.value] == 1
        assert returns["total"] == 1


class TestUserOrderStats:
    """Test the account page summary."""

    @pytest.mark.asyncio
    async def test_stats(self, db, make_order, people):
        await make_order(status=OrderStatus.DELIVERED)
        await make_order(status=OrderStatus.CANCELLED)
        await make_order(payment_status=PaymentStatus.PENDING)
        await make_order(status=OrderStatus.PACKED, user_id=people.other_customer_id)

        stats = await user_order_stats(db, people.customer_id)

        assert stats["total_orders"] == 3
        assert stats["delivered_orders"] == 1
        assert stats["cancelled_orders"] == 1
        assert stats["pending_orders"] == 1
        assert stats["processing_orders"] == 0
        assert stats["by_status"]["delivered"] == 1
        assert stats["total_amount_spent"] == Decimal("1500.00")
        assert stats["total_amount_refunded"] == Decimal("1500.00")
        assert stats["active_orders_value"] == Decimal("1500.00")

    @pytest.mark.asyncio
    async def test_processing_groups_confirmed_through_packed(self, db, make_order, people):
        await make_order(status=OrderStatus.CONFIRMED)
        await make_order(status=OrderStatus.PROCESSING)
        await make_order(status=OrderStatus.PACKED)

        stats = await user_order_stats(db, people.customer_id)

        assert stats["processing_orders"] == 3
        assert stats["active_orders_value"] == Decimal("4500.00")


class TestListOrders:
    """Test the paginated listing."""

    @pytest.mark.asyncio
    async def test_pagination(self, db, make_order, people):
        for _ in range(3):
            await make_order()

        first_page = await list_orders(db, user_id=people.customer_id, page=1, page_size=2)
        second_page = await list_orders(db, user_id=people.customer_id, page=2, page_size=2)

        assert first_page.total == 3
        assert first_page.pages == 2
        assert len(first_page.items) == 2
        assert len(second_page.items) == 1
        seen = {o.id for o in first_page.items} | {o.id for o in second_page.items}
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_page_size_is_clamped(self, db, make_order):
        await make_order()

        page = await list_orders(db, page_size=5000)

        assert page.page_size == 100

    @pytest.mark.asyncio
    async def test_filter_by_derived_status(self, db, make_order, people):
        await make_order()
        flagged = await make_order()
        await CancellationWorkflow(db).file_cancellation(flagged.id, people.customer_id, "Changed my mind")

        page = await list_orders(db, status=CANCELLATION_REQUESTED)

        assert [o.id for o in page.items] == [flagged.id]

    @pytest.mark.asyncio
    async def test_search_by_email(self, db, make_order, people):
        await make_order()
        target = await make_order(
            user_id=people.other_customer_id, customer_name="Ben Ortiz", customer_email="ben@example.com"
        )

        page = await list_orders(db, search="BEN@EXAMPLE")

        assert [o.id for o in page.items] == [target.id]

    @pytest.mark.asyncio
    async def test_updated_since(self, db, make_order):
        await make_order()
        now = datetime.now(timezone.utc)

        assert (await list_orders(db, updated_since=now - timedelta(hours=1))).total == 1
        assert (await list_orders(db, updated_since=now + timedelta(hours=1))).total == 0

    @pytest.mark.asyncio
    async def test_unknown_filter_is_a_validation_error(self, db):
        with pytest.raises(OrderValidationError) as exc_info:
            await list_orders(db, status="bogus")
        assert exc_info.value.details["field"] == "status"

        with pytest.raises(OrderValidationError) as exc_info:
            await list_orders(db, cancellation_status="bogus")
        assert exc_info.value.details["field"] == "cancellation_status"
