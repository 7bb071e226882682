"""
Pytest configuration and fixtures for Order Core tests.

Each test gets its own SQLite file so two sessions really are two
connections, the way concurrent admins would be.
"""
import os
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ordercore.core.database import Base
from ordercore.models import (
    AdminUser,
    Affiliate,
    Notification,
    NotificationRole,
    NotificationType,
    OrderStatus,
    PaymentStatus,
    SideEffectEvent,
    SideEffectType,
    User,
    HAPPY_PATH,
)
from ordercore.services.order_service import OrderService
from ordercore.services.order_state_machine import OrderStateMachine

COMPLETE_ADDRESS = {
    "full_name": "Asha Rao",
    "line1": "14 Residency Road",
    "line2": "Flat 3B",
    "city": "Bengaluru",
    "state": "KA",
    "postal_code": "560025",
    "country": "IN",
}

# 2 x 700 + 150 shipping - 50 discount = 1500, which earns 15 loyalty coins
DEFAULT_ITEMS = [
    {
        "product_id": 101,
        "product_name": "Saga Vol. 1",
        "product_sku": "SAGA-V1",
        "quantity": 2,
        "unit_price": Decimal("700.00"),
    }
]


@pytest.fixture
def mock_db() -> AsyncMock:
    """Create mock async database session."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.execute = AsyncMock()
    db.scalar = AsyncMock()
    return db


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh schema in a throwaway SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ordercore.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def people(db):
    """
    Two customers, two active admins, one deactivated admin and an affiliate.
    Only ids are exposed; ORM instances expire whenever a service rolls back.
    """
    customer = User(email="asha@example.com", full_name="Asha Rao")
    other_customer = User(email="ben@example.com", full_name="Ben Ortiz")
    admin = User(email="ops1@example.com", full_name="Ops One")
    second_admin = User(email="ops2@example.com", full_name="Ops Two")
    former_admin = User(email="ops-old@example.com", full_name="Former Ops")
    affiliate_user = User(email="corner@example.com", full_name="Comic Corner")
    db.add_all([customer, other_customer, admin, second_admin, former_admin, affiliate_user])
    await db.flush()

    db.add_all([
        AdminUser(user_id=admin.id, is_active=True),
        AdminUser(user_id=second_admin.id, is_active=True),
        AdminUser(user_id=former_admin.id, is_active=False),
    ])
    affiliate = Affiliate(user_id=affiliate_user.id, name="Comic Corner", affiliate_code="CORNER")
    db.add(affiliate)
    await db.flush()

    ids = SimpleNamespace(
        customer_id=customer.id,
        other_customer_id=other_customer.id,
        admin_id=admin.id,
        second_admin_id=second_admin.id,
        former_admin_id=former_admin.id,
        affiliate_user_id=affiliate_user.id,
        affiliate_id=affiliate.id,
    )
    ids.active_admin_ids = [ids.admin_id, ids.second_admin_id]
    await db.commit()
    return ids


@pytest.fixture
def advance(db, people):
    """Walk an order to a target status through the state machine."""
    async def _advance(order_id: int, target: OrderStatus):
        machine = OrderStateMachine(db)
        target = OrderStatus(target)
        order = await machine.get_order(order_id)
        current = OrderStatus(order.status)

        if target == OrderStatus.CANCELLED:
            return await machine.transition(order_id, target, actor_id=people.admin_id)

        walk_to = OrderStatus.DELIVERED if target == OrderStatus.RETURNED else target
        for step in HAPPY_PATH[HAPPY_PATH.index(current) + 1:HAPPY_PATH.index(walk_to) + 1]:
            order = await machine.transition(order_id, step, actor_id=people.admin_id)
        if target == OrderStatus.RETURNED:
            order = await machine.transition(order_id, target, actor_id=people.admin_id)
        return order
    return _advance


@pytest.fixture
def make_order(db, people, advance):
    """Register an order for the default customer and optionally advance it."""
    async def _make(
        status: OrderStatus = OrderStatus.PENDING,
        user_id=None,
        payment_status: PaymentStatus = PaymentStatus.PAID,
        address=COMPLETE_ADDRESS,
        with_affiliate: bool = False,
        loyalty_coins_to_earn=None,
        customer_name: str = "Asha Rao",
        customer_email: str = "asha@example.com",
    ):
        order = await OrderService(db).register_order(
            user_id=user_id or people.customer_id,
            items=DEFAULT_ITEMS,
            shipping_cost=Decimal("150.00"),
            discount_amount=Decimal("50.00"),
            shipping_address=address,
            customer_name=customer_name,
            customer_email=customer_email,
            payment_status=payment_status,
            payment_method="upi",
            affiliate_id=people.affiliate_id if with_affiliate else None,
            affiliate_commission=Decimal("75.00") if with_affiliate else None,
            loyalty_coins_to_earn=loyalty_coins_to_earn,
        )
        if OrderStatus(status) != OrderStatus.PENDING:
            order = await advance(order.id, status)
        return order
    return _make


@pytest.fixture
def count_notifications(db):
    """Count stored notifications, optionally by recipient, type and role."""
    async def _count(user_id=None, notification_type: NotificationType = None, role: NotificationRole = None):
        query = select(func.count(Notification.id))
        if user_id is not None:
            query = query.where(Notification.user_id == user_id)
        if notification_type is not None:
            query = query.where(Notification.type == NotificationType(notification_type).value)
        if role is not None:
            query = query.where(Notification.role == NotificationRole(role).value)
        return await db.scalar(query)
    return _count


@pytest.fixture
def side_effect_rows(db):
    """Recorded side effects for an order, oldest first."""
    async def _rows(order_id: int, event_type: SideEffectType = None):
        query = select(SideEffectEvent).where(SideEffectEvent.order_id == order_id)
        if event_type is not None:
            query = query.where(SideEffectEvent.event_type == SideEffectType(event_type).value)
        result = await db.execute(query.order_by(SideEffectEvent.id))
        return list(result.scalars().all())
    return _rows
