"""
Database engine and session management

One async engine per process. Request handlers get a session through the
get_db dependency; jobs and exports use get_db_session. Services commit their
own units of work; the wrappers here only commit leftovers and roll back on
error.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from ordercore.core.config import settings


def pool_options(database_url: str, environment: str) -> Dict[str, Any]:
    """Pool sizing for the target store. SQLite keeps the driver defaults."""
    if database_url.startswith("sqlite"):
        return {}
    if environment == "production":
        return {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    return {"pool_size": 2, "max_overflow": 5, "pool_pre_ping": True}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **pool_options(settings.DATABASE_URL, settings.ENVIRONMENT),
)

# expire_on_commit=False: services hand committed orders back to the routes
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


@asynccontextmanager
async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Session for work outside a request, e.g. exports or a bulk admin job.

        async with get_db_session() as db:
            await OrderStateMachine(db).transition(order_id, OrderStatus.CONFIRMED)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with get_db_session() as session:
        yield session
