"""
Rate limiting for customer-initiated writes.

Requests are keyed by the user id the identity gateway asserts, so customers
behind one NAT do not share a bucket. Anonymous requests fall back to the
client address. In-memory storage; a multi-instance deploy needs a shared
storage_uri.
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from ordercore.core.config import settings

logger = logging.getLogger(__name__)


def client_address(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def actor_key(request: Request) -> str:
    """Bucket key: asserted user id when present, client address otherwise."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if user_id.isdigit():
        return f"user:{user_id}"
    return f"ip:{client_address(request)}"


limiter = Limiter(
    key_func=actor_key,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 in the same {"error", "message"} shape as every other error."""
    logger.warning(f"Rate limit hit by {actor_key(request)} on {request.method} {request.url.path}")

    limit = exc.detail or "the allowed rate"
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limited",
            "message": f"You're doing that too often ({limit}). Please wait a moment and try again.",
        },
        headers={"Retry-After": "60"},
    )


def get_customer_request_limit():
    """Limit for filing cancellation and return requests."""
    return limiter.limit(settings.RATE_LIMIT_CUSTOMER_REQUESTS)
