"""Rate limiting configuration using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from telehealth.core.config import settings


def get_client_identifier(request: Request) -> str:
    """
    Get rate limit identifier from request.

    Priority order:
    1. User ID (if an auth dependency already resolved the caller)
    2. First X-Forwarded-For hop, then the socket peer address

    Args:
        request: FastAPI request object

    Returns:
        Unique identifier string for rate limiting
    """
    user = getattr(request.state, "user", None)
    if user is not None and getattr(user, "id", None):
        return f"user:{user.id}"

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_client_identifier,
    storage_uri=settings.RATE_LIMIT_STORAGE_URL,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_API_DEFAULT],
    headers_enabled=True,  # Add X-RateLimit-* headers to responses
)

# Checkout and cancellation touch the payment processor
purchase_limit = limiter.limit(settings.RATE_LIMIT_PURCHASE)
cancel_limit = limiter.limit(settings.RATE_LIMIT_CANCEL)

# Browser-originated ad-attribution relay
track_event_limit = limiter.limit(settings.RATE_LIMIT_TRACK_EVENT)
