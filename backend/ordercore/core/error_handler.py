"""
Error rendering

Domain errors become {"error": <code>, "message": <text for the user>} with
the status the exception carries. Anything else is caught by
ErrorSanitizationMiddleware, logged with its traceback, and answered with a
generic 500 that leaks nothing about the store.
"""
import logging
import traceback
import uuid

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ordercore.core.config import settings
from ordercore.core.exceptions import (
    OrderCoreError,
    NotFoundError,
    ConflictError,
)

logger = logging.getLogger(__name__)

# Lower-cased fragments that mark a message as internal
LEAKY_FRAGMENTS = (
    "sqlalchemy",
    "asyncpg",
    "aiosqlite",
    "postgresql",
    "sqlite",
    "traceback",
    "file \"",
    "password",
    "secret",
)

GENERIC_MESSAGE = "Something went wrong on our side. Please try again later."
MAX_MESSAGE_LENGTH = 200

# Fixed wording for errors whose own message is for logs only
FIXED_MESSAGES = {
    NotFoundError: "This order is no longer available.",
    ConflictError: "This request was already handled. Please refresh and try again.",
}


def safe_message(message: str) -> str:
    """Message fit for a client: internal-looking text replaced, long text cut."""
    if settings.DEBUG:
        return message
    lowered = message.lower()
    if any(fragment in lowered for fragment in LEAKY_FRAGMENTS):
        return GENERIC_MESSAGE
    if len(message) > MAX_MESSAGE_LENGTH:
        return message[:MAX_MESSAGE_LENGTH] + "..."
    return message


def user_message_for(exc: OrderCoreError) -> str:
    """
    Text shown to the customer or admin.

    Rejected actions (invalid transition, forbidden, validation) explain
    themselves. A conflict asks for a refresh and a missing order stays vague.
    """
    for error_type, message in FIXED_MESSAGES.items():
        if isinstance(exc, error_type):
            return message
    return safe_message(exc.message)


async def order_core_error_handler(request: Request, exc: OrderCoreError) -> JSONResponse:
    level = logging.WARNING if isinstance(exc, ConflictError) else logging.INFO
    logger.log(level, f"{request.method} {request.url.path} -> {exc.http_status} {exc.code}: {exc.message}")

    content = {"error": exc.code.lower(), "message": user_message_for(exc)}
    if settings.DEBUG:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.http_status, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrderCoreError, order_core_error_handler)


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """Last line of defence for exceptions no handler claimed."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = uuid.uuid4().hex[:12]
            logger.error(
                f"Unhandled {type(e).__name__} [{error_id}] on {request.method} {request.url.path}: {e}\n"
                f"{traceback.format_exc()}"
            )

            content = {"error": "internal_error", "message": GENERIC_MESSAGE, "error_id": error_id}
            if settings.DEBUG:
                content.update(message=str(e), type=type(e).__name__)
            return JSONResponse(status_code=500, content=content)
