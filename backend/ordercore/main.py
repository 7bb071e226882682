"""
Order Core Backend
FastAPI application entry point

    uvicorn ordercore.main:app

- Customer routes under /api/orders, admin routes under /api/admin,
  inbox under /api/notifications
- Domain errors rendered as {"error", "message"} JSON
- SlowAPI limits on customer request filing
- /health pings the store
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ordercore.api.routes import admin, notifications, orders
from ordercore.core.config import settings
from ordercore.core.database import Base, engine, get_db
from ordercore.core.error_handler import ErrorSanitizationMiddleware, register_exception_handlers
from ordercore.core.rate_limit import limiter, rate_limit_exceeded_handler
import ordercore.models  # noqa: F401  (register tables on Base.metadata)

VERSION = "1.0.0"

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Production schemas belong to the deploying store's migrations
    if settings.ENVIRONMENT == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Development tables created")

    logger.info(
        f"{settings.APP_NAME} {VERSION} up (environment={settings.ENVIRONMENT}, "
        f"refund policy={settings.RETURN_REFUND_POLICY})"
    )
    yield
    await engine.dispose()
    logger.info(f"{settings.APP_NAME} shut down")


def create_app() -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        description="Order lifecycle, cancellation and return workflows, and notifications",
        version=VERSION,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    register_exception_handlers(app)

    # Outermost first: CORS wraps the sanitizer so 500s still carry CORS headers
    app.add_middleware(ErrorSanitizationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH"],
        allow_headers=["*"],
    )

    app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
    app.include_router(admin.router, prefix="/api", tags=["Admin"])
    app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])

    @app.get("/", tags=["Health"])
    async def root():
        return {"message": settings.APP_NAME, "version": VERSION, "status": "operational"}

    @app.get("/health", tags=["Health"])
    async def health_check(db: AsyncSession = Depends(get_db)):
        """503 when the store does not answer."""
        body = {"status": "healthy", "database": "connected", "timestamp": datetime.now(timezone.utc).isoformat()}
        try:
            await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Health check: database ping failed: {e}")
            body.update(status="unhealthy", database=f"error: {type(e).__name__}")
            return JSONResponse(status_code=503, content=body)
        return body

    return app


app = create_app()
