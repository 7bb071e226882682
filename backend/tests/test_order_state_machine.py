"""
Tests for the order state machine: transition rules, guarded updates,
ledger entries and post-commit hooks.
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch
import os

# Set test environment
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from ordercore.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
)
from ordercore.models import (
    CancellationStatus,
    NotificationRole,
    NotificationType,
    OrderStatus,
    PaymentStatus,
    SideEffectType,
    HAPPY_PATH,
    VALID_ORDER_TRANSITIONS,
    next_status,
)
from ordercore.services.cancellation_service import CancellationWorkflow
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.order_state_machine import OrderStateMachine, coerce_status
from ordercore.services.status_ledger import OrderStatusLedger


class TestTransitionTable:
    """Test the static transition rules."""

    def test_happy_path_successors(self):
        """Each happy-path status leads only to the next one (plus cancel/return)."""
        for status in HAPPY_PATH[:-1]:
            assert next_status(status) in VALID_ORDER_TRANSITIONS[status]
        assert next_status(OrderStatus.DELIVERED) is None

    def test_cancel_allowed_only_before_shipping(self):
        """Cancelled is reachable from pending through packed, never after."""
        for status in (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.PACKED):
            assert OrderStatus.CANCELLED in VALID_ORDER_TRANSITIONS[status]
        for status in (OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED):
            assert OrderStatus.CANCELLED not in VALID_ORDER_TRANSITIONS[status]

    def test_returned_only_from_delivered(self):
        sources = [s for s, targets in VALID_ORDER_TRANSITIONS.items() if OrderStatus.RETURNED in targets]
        assert sources == [OrderStatus.DELIVERED]

    def test_terminal_states_have_no_exits(self):
        assert VALID_ORDER_TRANSITIONS[OrderStatus.CANCELLED] == []
        assert VALID_ORDER_TRANSITIONS[OrderStatus.RETURNED] == []

    def test_coerce_unknown_status(self):
        """Test an unknown status string is a validation error."""
        with pytest.raises(OrderValidationError):
            coerce_status("lost_in_space")
        assert coerce_status("packed") == OrderStatus.PACKED


class TestTransitions:
    """Test admin transitions against the database."""

    @pytest.mark.asyncio
    async def test_full_happy_path(self, db, make_order, people):
        """Walk pending to delivered; every step is ledgered and timestamped."""
        order = await make_order()
        order_id = order.id
        machine = OrderStateMachine(db)

        for target in HAPPY_PATH[1:]:
            order = await machine.transition(order_id, target, actor_id=people.admin_id)
            assert order.status == target.value
            assert order.totals_are_consistent()

        assert order.confirmed_at is not None
        assert order.packed_at is not None
        assert order.shipped_at is not None
        assert order.delivered_at is not None

        timeline = await OrderStatusLedger(db).timeline(order_id)
        assert [entry.status for entry in timeline] == [s.value for s in HAPPY_PATH]
        assert OrderStatusLedger.is_monotonic(entry.status for entry in timeline)
        assert timeline[0].note == "Order placed"

    @pytest.mark.asyncio
    async def test_skipping_a_stage_is_rejected(self, db, make_order, people):
        """Test pending -> shipped is not allowed."""
        order = await make_order()
        machine = OrderStateMachine(db)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await machine.transition(order.id, OrderStatus.SHIPPED, actor_id=people.admin_id)

        assert exc_info.value.code == "INVALID_TRANSITION"
        assert exc_info.value.details["current"] == "pending"
        reloaded = await machine.get_order(order.id)
        assert reloaded.status == OrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_moving_backwards_is_rejected(self, db, make_order, people):
        order = await make_order(status=OrderStatus.PACKED)
        machine = OrderStateMachine(db)

        with pytest.raises(InvalidTransitionError):
            await machine.transition(order.id, OrderStatus.CONFIRMED, actor_id=people.admin_id)

    @pytest.mark.asyncio
    async def test_cannot_cancel_after_shipping(self, db, make_order, people):
        order = await make_order(status=OrderStatus.SHIPPED)
        machine = OrderStateMachine(db)

        with pytest.raises(InvalidTransitionError):
            await machine.transition(order.id, OrderStatus.CANCELLED, actor_id=people.admin_id)

    @pytest.mark.asyncio
    async def test_return_requires_delivered(self, db, make_order, people):
        order = await make_order(status=OrderStatus.PACKED)
        machine = OrderStateMachine(db)

        with pytest.raises(InvalidTransitionError):
            await machine.transition(order.id, OrderStatus.RETURNED, actor_id=people.admin_id)

    @pytest.mark.asyncio
    async def test_terminal_order_cannot_change(self, db, make_order, people):
        """Test a cancelled order stays cancelled."""
        order = await make_order(status=OrderStatus.CANCELLED)
        machine = OrderStateMachine(db)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await machine.transition(order.id, OrderStatus.CONFIRMED, actor_id=people.admin_id)

        assert "already cancelled" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_shipping_requires_complete_address(self, db, make_order, people):
        """Test an order without a city cannot ship."""
        address = {"full_name": "Asha Rao", "line1": "14 Residency Road", "postal_code": "560025"}
        order = await make_order(status=OrderStatus.PACKED, address=address)
        machine = OrderStateMachine(db)

        with pytest.raises(OrderValidationError) as exc_info:
            await machine.transition(order.id, OrderStatus.SHIPPED, actor_id=people.admin_id)

        assert exc_info.value.details["missing"] == ["city"]
        assert (await machine.get_order(order.id)).status == OrderStatus.PACKED.value

    @pytest.mark.asyncio
    async def test_unknown_order(self, db, people):
        machine = OrderStateMachine(db)

        with pytest.raises(NotFoundError):
            await machine.transition(9999, OrderStatus.CONFIRMED, actor_id=people.admin_id)

    @pytest.mark.asyncio
    async def test_direct_cancel_blocked_while_request_pending(self, db, make_order, people):
        """Test a pending customer request must be decided through the workflow."""
        order = await make_order(status=OrderStatus.CONFIRMED)
        await CancellationWorkflow(db).file_cancellation(order.id, people.customer_id, "Changed my mind")
        machine = OrderStateMachine(db)

        reloaded = await machine.get_order(order.id)
        assert OrderStatus.CANCELLED not in machine.allowed_targets(reloaded)
        assert OrderStatus.PROCESSING in machine.allowed_targets(reloaded)

        with pytest.raises(InvalidTransitionError):
            await machine.transition(order.id, OrderStatus.CANCELLED, actor_id=people.admin_id)

    @pytest.mark.asyncio
    async def test_pending_request_does_not_block_fulfillment(self, db, make_order, people):
        """Test the order keeps moving forward while a request waits."""
        order = await make_order(status=OrderStatus.CONFIRMED)
        await CancellationWorkflow(db).file_cancellation(order.id, people.customer_id, "Changed my mind")

        moved = await OrderStateMachine(db).transition(order.id, OrderStatus.PROCESSING, actor_id=people.admin_id)

        assert moved.status == OrderStatus.PROCESSING.value
        assert moved.cancellation_status == CancellationStatus.REQUESTED.value


class TestGuardedUpdates:
    """Test concurrent writers cannot both win."""

    @pytest.mark.asyncio
    async def test_stale_writer_loses(self, db, session_factory, make_order, people):
        """Test a writer acting on an outdated read matches no row."""
        order = await make_order()
        order_id = order.id
        machine = OrderStateMachine(db)
        stale = await machine.get_order(order_id)

        async with session_factory() as other_db:
            await OrderStateMachine(other_db).transition(
                order_id, OrderStatus.CONFIRMED, actor_id=people.second_admin_id
            )

        applied = await machine.apply_guarded(stale, OrderStatus.CONFIRMED, actor_id=people.admin_id)
        assert applied is False
        await db.rollback()

        timeline = await machine.ledger.timeline(order_id)
        assert [entry.status for entry in timeline] == ["pending", "confirmed"]
        assert timeline[-1].actor_id == people.second_admin_id

    @pytest.mark.asyncio
    async def test_transition_reports_conflict(self, db, make_order, people):
        """Test transition() raises ConflictError when the guarded update misses."""
        order_id = (await make_order()).id
        machine = OrderStateMachine(db)

        with patch.object(OrderStateMachine, "apply_guarded", AsyncMock(return_value=False)):
            with pytest.raises(ConflictError) as exc_info:
                await machine.transition(order_id, OrderStatus.CONFIRMED, actor_id=people.admin_id)

        assert exc_info.value.details["observed"] == "pending"
        assert (await machine.get_order(order_id)).status == OrderStatus.PENDING.value


class TestPostCommitHooks:
    """Test notifications and side effects that follow a transition."""

    @pytest.mark.asyncio
    async def test_status_change_notifies_customer(self, db, make_order, people, count_notifications):
        order = await make_order()

        await OrderStateMachine(db).transition(order.id, OrderStatus.CONFIRMED, actor_id=people.admin_id)

        assert await count_notifications(people.customer_id, NotificationType.ORDER_CONFIRMED) == 1

    @pytest.mark.asyncio
    async def test_admin_cancel_effects(self, db, make_order, people, count_notifications, side_effect_rows):
        """Test cancelling a paid order releases stock, queues a refund and alerts active admins."""
        order = await make_order(status=OrderStatus.CONFIRMED)

        cancelled = await OrderStateMachine(db).transition(
            order.id, OrderStatus.CANCELLED, note="Out of stock", actor_id=people.admin_id
        )

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.cancelled_at is not None
        assert await count_notifications(people.customer_id, NotificationType.ORDER_CANCELLED) == 1
        for admin_id in people.active_admin_ids:
            assert await count_notifications(admin_id, NotificationType.ORDER_CANCELLED, NotificationRole.ADMIN) == 1
        assert await count_notifications(people.former_admin_id) == 0

        effects = {row.event_type: row for row in await side_effect_rows(order.id)}
        assert set(effects) == {SideEffectType.INVENTORY_RELEASE.value, SideEffectType.REFUND_QUEUED.value}
        assert effects[SideEffectType.REFUND_QUEUED.value].amount == Decimal("1500.00")

    @pytest.mark.asyncio
    async def test_unpaid_cancel_queues_no_refund(self, db, make_order, people, side_effect_rows):
        order = await make_order(payment_status=PaymentStatus.PENDING)

        await OrderStateMachine(db).transition(order.id, OrderStatus.CANCELLED, actor_id=people.admin_id)

        types = [row.event_type for row in await side_effect_rows(order.id)]
        assert types == [SideEffectType.INVENTORY_RELEASE.value]

    @pytest.mark.asyncio
    async def test_delivery_credits_loyalty_once(self, db, make_order, people, side_effect_rows):
        """Test 1500 at the default rate earns 15 coins, recorded exactly once."""
        order = await make_order(status=OrderStatus.DELIVERED)

        credits = await side_effect_rows(order.id, SideEffectType.LOYALTY_CREDIT)
        assert len(credits) == 1
        assert credits[0].amount == Decimal("15")
        assert credits[0].payload["user_id"] == people.customer_id

    @pytest.mark.asyncio
    async def test_checkout_coins_take_precedence(self, db, make_order, side_effect_rows):
        order = await make_order(status=OrderStatus.DELIVERED, loyalty_coins_to_earn=40)

        credits = await side_effect_rows(order.id, SideEffectType.LOYALTY_CREDIT)
        assert [row.payload["coins"] for row in credits] == [40]

    @pytest.mark.asyncio
    async def test_affiliate_commission_notifications(self, db, make_order, people, count_notifications):
        """Test the affiliate hears about earned and rejected commissions."""
        delivered = await make_order(status=OrderStatus.DELIVERED, with_affiliate=True)
        assert await count_notifications(
            people.affiliate_user_id, NotificationType.COMMISSION_EARNED, NotificationRole.AFFILIATE
        ) == 1

        await OrderStateMachine(db).transition(delivered.id, OrderStatus.RETURNED, actor_id=people.admin_id)
        assert await count_notifications(people.affiliate_user_id, NotificationType.COMMISSION_REJECTED) == 1

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_transition(self, db, make_order, people):
        """Test a broken notifier never undoes a committed transition."""
        order_id = (await make_order()).id
        machine = OrderStateMachine(db)

        with patch.object(NotificationDispatcher, "dispatch", AsyncMock(side_effect=RuntimeError("inbox down"))):
            confirmed = await machine.transition(order_id, OrderStatus.CONFIRMED, actor_id=people.admin_id)

        assert confirmed.status == OrderStatus.CONFIRMED.value
        timeline = await machine.ledger.timeline(order_id)
        assert [entry.status for entry in timeline] == ["pending", "confirmed"]


class TestConfirmDelivery:
    """Test customer delivery confirmation."""

    @pytest.mark.asyncio
    async def test_out_for_delivery_then_confirm(self, db, make_order, people, side_effect_rows):
        """Shipped -> out_for_delivery by admin, then the customer confirms."""
        order = await make_order(status=OrderStatus.SHIPPED)
        machine = OrderStateMachine(db)

        await machine.transition(order.id, OrderStatus.OUT_FOR_DELIVERY, actor_id=people.admin_id)
        delivered = await machine.confirm_delivery(order.id, people.customer_id)

        assert delivered.status == OrderStatus.DELIVERED.value
        assert delivered.delivered_at is not None
        assert len(await side_effect_rows(order.id, SideEffectType.LOYALTY_CREDIT)) == 1

        latest = await machine.ledger.latest(order.id)
        assert latest.note == "Delivery confirmed by customer"
        assert latest.actor_id == people.customer_id

    @pytest.mark.asyncio
    async def test_other_customer_is_forbidden(self, db, make_order, people):
        """Test ownership is checked before status."""
        order = await make_order()

        with pytest.raises(ForbiddenError):
            await OrderStateMachine(db).confirm_delivery(order.id, people.other_customer_id)

    @pytest.mark.asyncio
    async def test_unshipped_order_cannot_be_confirmed(self, db, make_order, people):
        order = await make_order(status=OrderStatus.PACKED)

        with pytest.raises(InvalidTransitionError):
            await OrderStateMachine(db).confirm_delivery(order.id, people.customer_id)
